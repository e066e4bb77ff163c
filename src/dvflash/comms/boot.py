"""
DM644x UART Boot Handshake
==========================

This module drives the serial boot protocol of the TI DM644x: the mask-ROM
boot loader (RBL) first receives a small user boot loader (UBL), which then
accepts commands to run an application from DDR, burn flash or erase it.

Protocol Overview
-----------------
Every exchange follows the same pattern: the device announces its state
with a NUL-terminated token, the host answers with a fixed-width ASCII
header frame, the device says BEGIN, the host sends a payload, and the
device confirms with one or more DONE tokens.

1. **First-stage loader** (RBL)

       device: " BOOTME\\0"
       host:   "    ACK\\0" CRC(8) LEN(4) EXEC(4) "0000"
       device: "  BEGIN\\0"
       host:   CRC table, 256 x 8 lowercase hex digits
       device: "   DONE\\0"
       host:   loader as 8 hex digits per little-endian word
       device: "   DONE\\0"

2. **Boot-mode check**: the UBL prints "PSPBootMode = UART" when the
   board straps select UART boot.

3. **Command** (UBL)

       device: "BOOTPSP\\0"
       host:   "    CMD\\0" COMMAND(8)

4. **Erase**: the UBL replies "   DONE\\0" when the flash is blank.

5. **Application**

       device: "SENDAPP\\0"
       host:   "    ACK\\0" MAGIC(8) ENTRY(8) LEN(8) "0000"
       device: "  BEGIN\\0"
       host:   application payload
       device: "   DONE\\0" x3 (received, decoded, running)

6. **Loader and application**: "SENDUBL\\0" with the header
   "    ACK\\0" MAGIC(8) "8000" EXEC(4) LEN(8) "0000", then the
   application exchange of phase 5.

Failure Handling
----------------
A phase is a list of steps. When a wait sees the alternate token (the
device fell back to BOOTME or BOOTPSP) the phase restarts from its first
step; later phases therefore always re-issue the command. The third DONE
of the application phase is fatal when missing, since the device may
already be executing the image. Cancellation and transport faults abort
the run.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Final, Optional, Union

from dvflash.comms.crc import Crc32, loader_crc32
from dvflash.comms.transport import TokenReader, Transport
from dvflash.errors import (
    CancelledError,
    DVFlashError,
    FinalConfirmationError,
    PlanError,
    ProtocolError,
    TimeoutError,
)
from dvflash.plan import CommandPlan, MagicFlag, Operation, PayloadFormat
from dvflash.srec.encoder import LOADER_STUB_SIZE, prepare_payload

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Tokens
# =============================================================================

BOOTME: Final[str] = " BOOTME\0"
BOOTPSP: Final[str] = "BOOTPSP\0"
ACK: Final[str] = "    ACK\0"
BEGIN: Final[str] = "  BEGIN\0"
DONE: Final[str] = "   DONE\0"
SENDAPP: Final[str] = "SENDAPP\0"
SENDUBL: Final[str] = "SENDUBL\0"
CMD: Final[str] = "    CMD\0"

BOOT_MODE_UART: Final[str] = "PSPBootMode = UART"
BOOT_MODE_OTHER: Final[str] = "PSPBootMode = N"

# Padding field closing every header frame
FRAME_PADDING: Final[str] = "0000"

# Second-stage loader load-address field of the SENDUBL header
LOADER_ADDRESS_FIELD: Final[str] = "8000"

# Callback asked whether to continue when the board is not in UART boot mode
ConfirmCallback = Callable[[str], bool]


# =============================================================================
# Phase Model
# =============================================================================

class PhaseState(Enum):
    """Position within a phase."""
    AWAITING_TRIGGER = "awaiting-trigger"
    SENDING_ACK_HEADER = "sending-ack-header"
    AWAITING_BEGIN = "awaiting-begin"
    SENDING_PAYLOAD = "sending-payload"
    AWAITING_FIRST_DONE = "awaiting-first-done"
    AWAITING_SECOND_DONE = "awaiting-second-done"
    AWAITING_THIRD_DONE = "awaiting-third-done"
    COMPLETE = "complete"


class OnMiss(Enum):
    """What a wait step does when its token does not arrive."""
    RETRY = "retry"
    FATAL = "fatal"
    IGNORE = "ignore"


class StepResult(Enum):
    """Outcome of executing one step."""
    CONTINUE = "continue"
    RETRY = "retry"


@dataclass(frozen=True)
class WaitStep:
    """Wait for a device token."""
    state: PhaseState
    expected: str
    alternate: str
    verbose: bool = False
    on_miss: OnMiss = OnMiss.RETRY
    message: str = ""


@dataclass(frozen=True)
class SendStep:
    """Transmit bytes to the device."""
    state: PhaseState
    data: bytes
    message: str = ""


Step = Union[WaitStep, SendStep]


@dataclass
class Phase:
    """
    A restartable list of steps.

    Attributes:
        name: Name used in log messages.
        steps: Steps executed in order.
        discard_input: Flush the receive buffer before every attempt.
    """
    name: str
    steps: list[Step] = field(default_factory=list)
    discard_input: bool = False


# =============================================================================
# Frame Builders
# =============================================================================

def _hex_field(value: int, width: int, name: str) -> str:
    if not 0 <= value < (1 << (4 * width)):
        raise PlanError(f"{name} 0x{value:X} does not fit {width} hex digits")
    return f"{value:0{width}X}"


def build_rbl_ack_frame(crc: int, length: int, exec_address: int) -> bytes:
    """
    Build the ACK header answering the boot ROM's BOOTME.

    Args:
        crc: Loader CRC (8 hex digits).
        length: Loader length in bytes (4 hex digits).
        exec_address: Loader exec address (4 hex digits).

    Returns:
        28-byte ASCII frame.
    """
    return (
        ACK
        + _hex_field(crc, 8, "CRC")
        + _hex_field(length, 4, "Loader length")
        + _hex_field(exec_address, 4, "Loader exec address")
        + FRAME_PADDING
    ).encode("ascii")


def build_command_frame(command: int) -> bytes:
    """Build the CMD frame answering BOOTPSP (16 bytes)."""
    return (CMD + _hex_field(command, 8, "Command")).encode("ascii")


def build_loader_ack_frame(magic: int, exec_address: int, length: int) -> bytes:
    """
    Build the ACK header answering SENDUBL.

    Args:
        magic: Boot-mode code of the loader (8 hex digits).
        exec_address: Loader exec address (4 hex digits).
        length: Payload length in bytes (8 hex digits).

    Returns:
        36-byte ASCII frame.
    """
    return (
        ACK
        + _hex_field(magic, 8, "Magic")
        + LOADER_ADDRESS_FIELD
        + _hex_field(exec_address, 4, "Loader exec address")
        + _hex_field(length, 8, "Loader length")
        + FRAME_PADDING
    ).encode("ascii")


def build_app_ack_frame(magic: int, entry_point: int, length: int) -> bytes:
    """
    Build the ACK header answering SENDAPP.

    Args:
        magic: Boot-mode code of the application (8 hex digits).
        entry_point: Application entry point (8 hex digits).
        length: Payload length in bytes (8 hex digits).

    Returns:
        36-byte ASCII frame.
    """
    return (
        ACK
        + _hex_field(magic, 8, "Magic")
        + _hex_field(entry_point, 8, "Entry point")
        + _hex_field(length, 8, "Application length")
        + FRAME_PADDING
    ).encode("ascii")


def encode_loader_words(data: bytes) -> bytes:
    """
    Render a first-stage loader as the boot ROM expects it.

    The image is zero padded to a whole number of 32-bit words, and each
    little-endian word is sent as 8 uppercase hex digits.

    Note:
        Some host tools drop a trailing partial word rather than padding
        it, sending fewer bytes than the length field announces. DM644x
        loaders are built as whole words, so both forms send the same
        text for well-formed images.

    Example:
        >>> encode_loader_words(bytes([0x78, 0x56, 0x34, 0x12]))
        b'12345678'
    """
    padding = -len(data) % 4
    padded = data + bytes(padding)
    words = (
        int.from_bytes(padded[i:i + 4], "little")
        for i in range(0, len(padded), 4)
    )
    return "".join(f"{word:08X}" for word in words).encode("ascii")


# =============================================================================
# Handshake Sequencer
# =============================================================================

class BootSequencer:
    """
    Drives the handshake for one command plan.

    Example:
        port = open_serial_port('/dev/ttyS0')
        sequencer = BootSequencer(SerialTransport(port), plan, verbose=True)
        sequencer.run()

    Args:
        transport: Byte stream to the device.
        plan: Validated command plan.
        cancel: Event that aborts the run when set.
        verbose: Log device output at INFO.
        confirm: Asked whether to continue when the board is not in UART
            boot mode. Without it such a board aborts the run.
        token_timeout: Seconds allowed per token wait (None waits forever).
        max_attempts: Attempts allowed per phase (None retries forever).
        crc: Loader CRC model; defaults to loader_crc32().
    """

    def __init__(
        self,
        transport: Transport,
        plan: CommandPlan,
        cancel: Optional[threading.Event] = None,
        verbose: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        token_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        crc: Optional[Crc32] = None,
    ):
        self.transport = transport
        self.plan = plan
        self.cancel = cancel or threading.Event()
        self.verbose = verbose
        self.confirm = confirm
        self.max_attempts = max_attempts
        self.crc = crc or loader_crc32()
        self.reader = TokenReader(transport, self.cancel, token_timeout)
        self.state = PhaseState.AWAITING_TRIGGER

    # -------------------------------------------------------------------------
    # Entry Point
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """
        Execute every phase the plan requires.

        Raises:
            ProtocolError: If the command has no phase sequence.
            CancelledError: If cancelled, or the operator declines to
                continue on a board not in UART boot mode.
            FinalConfirmationError: If the application never confirms
                that it started.
            TimeoutError: If a phase exhausts max_attempts.
            ConnectionError: If the transport fails.
        """
        operation = self.plan.operation
        if operation is None:
            raise ProtocolError(
                f"Command not recognized: 0x{int(self.plan.command):08X}"
            )

        if self.plan.first_stage_required:
            self.run_phase(self.first_stage_phase())
            self.check_boot_mode()

        if operation == Operation.ERASE:
            phase = self.erase_phase()
        elif operation == Operation.LOADER_AND_APPLICATION:
            phase = self.loader_and_app_phase()
        else:
            phase = self.app_phase()

        self.run_phase(phase)
        logger.info("Operation completed successfully.")

    # -------------------------------------------------------------------------
    # Phase Execution
    # -------------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise CancelledError("Operation cancelled")

    def run_phase(self, phase: Phase) -> None:
        """
        Run a phase until every step succeeds, restarting on mismatch.

        Raises:
            TimeoutError: If max_attempts is set and exhausted.
        """
        attempt = 0
        while True:
            self._check_cancelled()
            attempt += 1
            if self.max_attempts is not None and attempt > self.max_attempts:
                raise TimeoutError(
                    f"{phase.name} phase failed after {self.max_attempts} attempts"
                )

            logger.debug("%s phase, attempt %d", phase.name, attempt)
            if phase.discard_input:
                self.transport.discard_input()

            if self._execute(phase):
                self.state = PhaseState.COMPLETE
                logger.debug("%s phase complete", phase.name)
                return

            logger.log(
                logging.INFO if self.verbose else logging.DEBUG,
                "Restarting %s phase", phase.name,
            )

    def _execute(self, phase: Phase) -> bool:
        for step in phase.steps:
            self._check_cancelled()
            self.state = step.state
            if self._run_step(step) == StepResult.RETRY:
                return False
        return True

    def _run_step(self, step: Step) -> StepResult:
        if isinstance(step, SendStep):
            self.transport.write(step.data)
            if step.message:
                logger.info(step.message)
            return StepResult.CONTINUE

        verbose = self.verbose or step.verbose
        if self.reader.wait_for(step.expected, step.alternate, verbose):
            if step.message:
                logger.info(step.message)
            return StepResult.CONTINUE

        token = step.expected.strip("\0 ")
        if step.on_miss == OnMiss.FATAL:
            raise FinalConfirmationError(step.expected)
        if step.on_miss == OnMiss.IGNORE:
            logger.warning("%s not received, continuing", token)
            return StepResult.CONTINUE

        logger.log(
            logging.INFO if verbose else logging.DEBUG,
            "%s not received", token,
        )
        return StepResult.RETRY

    # -------------------------------------------------------------------------
    # Boot Mode
    # -------------------------------------------------------------------------

    def check_boot_mode(self) -> None:
        """
        Verify the UBL reports UART boot mode, asking the operator if not.

        Raises:
            CancelledError: If the operator declines, or no confirm
                callback is available.
        """
        self._check_cancelled()
        if not self.reader.wait_for(BOOT_MODE_UART, BOOT_MODE_OTHER, verbose=True):
            logger.warning("The DM644x is NOT in UART boot mode!")
            question = "Only continue if you are sure of what you are doing. Continue?"
            if self.confirm is None or not self.confirm(question):
                raise CancelledError(
                    "Device is not in UART boot mode. "
                    "Check your switch and jumper settings."
                )
        self.transport.discard_input()

    # -------------------------------------------------------------------------
    # Phase Builders
    # -------------------------------------------------------------------------

    def first_stage_phase(self) -> Phase:
        """Build the phase that sends the first-stage loader to the boot ROM."""
        image = self.plan.first_stage_image
        if image is None:
            raise PlanError("First-stage loader image is required")

        loader = image[LOADER_STUB_SIZE:]
        crc = self.crc.checksum(loader)
        logger.debug("First-stage loader: %d bytes, CRC 0x%08X", len(loader), crc)

        return Phase("first-stage loader", [
            WaitStep(PhaseState.AWAITING_TRIGGER, BOOTME, BOOTME,
                     message="BOOTME command received. Returning ACK and header..."),
            SendStep(PhaseState.SENDING_ACK_HEADER,
                     build_rbl_ack_frame(crc, len(loader), self.plan.first_stage_exec_address),
                     message="ACK command sent. Waiting for BEGIN command..."),
            WaitStep(PhaseState.AWAITING_BEGIN, BEGIN, BOOTME, verbose=True,
                     message="BEGIN command received. Sending CRC table..."),
            SendStep(PhaseState.SENDING_PAYLOAD, self.crc.table_hex().encode("ascii"),
                     message="CRC table sent. Waiting for DONE..."),
            WaitStep(PhaseState.AWAITING_FIRST_DONE, DONE, BOOTME,
                     message="DONE received. Sending the UART UBL file..."),
            SendStep(PhaseState.SENDING_PAYLOAD, encode_loader_words(loader)),
            WaitStep(PhaseState.AWAITING_SECOND_DONE, DONE, BOOTME,
                     message="DONE received. UART UBL file was accepted."),
        ])

    def command_steps(self) -> list[Step]:
        """Steps announcing the command to the running UBL."""
        return [
            WaitStep(PhaseState.AWAITING_TRIGGER, BOOTPSP, BOOTPSP,
                     message="BOOTPSP command received. Returning CMD and command..."),
            SendStep(PhaseState.SENDING_ACK_HEADER,
                     build_command_frame(self.plan.command),
                     message="CMD value sent."),
        ]

    def erase_phase(self) -> Phase:
        """Build the global erase phase."""
        return Phase("erase", self.command_steps() + [
            WaitStep(PhaseState.AWAITING_FIRST_DONE, DONE, BOOTPSP, verbose=True,
                     message="Erase completed."),
        ], discard_input=True)

    def app_steps(self, payload: bytes, magic: MagicFlag, final: OnMiss) -> list[Step]:
        """Steps of the application exchange after SENDAPP."""
        return [
            SendStep(PhaseState.SENDING_ACK_HEADER,
                     build_app_ack_frame(magic, self.plan.app_entry_point, len(payload)),
                     message="ACK command sent. Waiting for BEGIN command..."),
            WaitStep(PhaseState.AWAITING_BEGIN, BEGIN, BOOTPSP,
                     message="BEGIN command received. Sending the application code..."),
            SendStep(PhaseState.SENDING_PAYLOAD, payload,
                     message="Application code sent. Waiting for DONE..."),
            WaitStep(PhaseState.AWAITING_FIRST_DONE, DONE, BOOTPSP,
                     message="DONE received. All bytes of the application received..."),
            WaitStep(PhaseState.AWAITING_SECOND_DONE, DONE, BOOTPSP,
                     message="DONE received. Application decoded correctly."),
            WaitStep(PhaseState.AWAITING_THIRD_DONE, DONE, BOOTPSP, verbose=True,
                     on_miss=final, message="DONE received. Application started."),
        ]

    def app_payload(self) -> bytes:
        """Prepare the application bytes sent after BEGIN."""
        if self.plan.app_image is None:
            raise PlanError("Application image is required")
        return prepare_payload(
            self.plan.app_image,
            self.plan.app_load_address,
            strip_leading=False,
            source_name=self.plan.app_name or None,
            fmt=self.plan.payload_format,
        )

    def app_phase(self) -> Phase:
        """Build the phase that sends and runs an application."""
        payload = self.app_payload()
        return Phase("application", self.command_steps() + [
            WaitStep(PhaseState.AWAITING_TRIGGER, SENDAPP, BOOTPSP,
                     message="SENDAPP received. Returning ACK and header for application data..."),
        ] + self.app_steps(payload, self.plan.app_magic, OnMiss.FATAL),
            discard_input=True)

    def loader_and_app_phase(self) -> Phase:
        """Build the phase that burns a second-stage loader and application."""
        if self.plan.loader_image is None:
            raise PlanError("Second-stage loader image is required")

        loader = prepare_payload(
            self.plan.loader_image,
            self.plan.loader_load_address,
            strip_leading=self.plan.strip_loader_stub,
            source_name=self.plan.loader_name or None,
            fmt=PayloadFormat.SREC,
        )
        payload = self.app_payload()

        return Phase("loader and application", self.command_steps() + [
            WaitStep(PhaseState.AWAITING_TRIGGER, SENDUBL, BOOTPSP,
                     message="SENDUBL received. Returning ACK and header for UBL data..."),
            SendStep(PhaseState.SENDING_ACK_HEADER,
                     build_loader_ack_frame(MagicFlag.SAFE, self.plan.loader_exec_address, len(loader)),
                     message="ACK command sent. Waiting for BEGIN command..."),
            WaitStep(PhaseState.AWAITING_BEGIN, BEGIN, BOOTPSP,
                     message="BEGIN command received. Sending the flash UBL code..."),
            SendStep(PhaseState.SENDING_PAYLOAD, loader,
                     message="Flash UBL code sent. Waiting for DONE..."),
            WaitStep(PhaseState.AWAITING_FIRST_DONE, DONE, BOOTPSP,
                     message="DONE received. All bytes of the flash UBL received..."),
            WaitStep(PhaseState.AWAITING_SECOND_DONE, DONE, BOOTPSP,
                     message="DONE received. Flash UBL decoded correctly."),
            WaitStep(PhaseState.AWAITING_TRIGGER, SENDAPP, BOOTPSP, verbose=True,
                     message="SENDAPP received. Returning ACK and header for application data..."),
        ] + self.app_steps(payload, self.plan.app_magic, OnMiss.IGNORE),
            discard_input=True)


# =============================================================================
# Run Outcome
# =============================================================================

@dataclass(frozen=True)
class FlashOutcome:
    """Result of a flashing run."""
    succeeded: bool
    summary: str


def run_flash(
    transport: Transport,
    plan: CommandPlan,
    cancel: Optional[threading.Event] = None,
    verbose: bool = False,
    confirm: Optional[ConfirmCallback] = None,
    token_timeout: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> FlashOutcome:
    """
    Run the handshake for a plan and report the outcome.

    Package errors (transport faults, cancellation, a missing final DONE)
    are turned into an unsuccessful outcome rather than raised.

    Args:
        transport: Byte stream to the device.
        plan: Command plan.
        cancel: Event that aborts the run when set.
        verbose: Log device output at INFO.
        confirm: Boot-mode confirmation callback.
        token_timeout: Seconds allowed per token wait.
        max_attempts: Attempts allowed per phase.

    Returns:
        FlashOutcome with a one-line summary.
    """
    sequencer = BootSequencer(
        transport, plan,
        cancel=cancel,
        verbose=verbose,
        confirm=confirm,
        token_timeout=token_timeout,
        max_attempts=max_attempts,
    )

    try:
        sequencer.run()
    except CancelledError as e:
        logger.debug("Run cancelled in state %s", sequencer.state.name)
        return FlashOutcome(False, f"Cancelled: {e}")
    except DVFlashError as e:
        logger.debug("Run failed in state %s: %s", sequencer.state.name, e)
        return FlashOutcome(False, str(e))

    return FlashOutcome(True, "Operation completed successfully.")


# =============================================================================
# Worker Thread
# =============================================================================

class FlashWorker(threading.Thread):
    """
    Runs run_flash() on a dedicated thread that owns the transport.

    The controlling thread may call cancel() at any time; the worker stops
    at its next cancellation check. After join(), `outcome` holds the
    result, or `error` holds an unexpected exception.

    Example:
        worker = FlashWorker(transport, plan)
        worker.start()
        try:
            worker.join()
        except KeyboardInterrupt:
            worker.cancel()
            worker.join()
    """

    def __init__(
        self,
        transport: Transport,
        plan: CommandPlan,
        verbose: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        token_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        super().__init__(name="dvflash-worker", daemon=True)
        self.transport = transport
        self.plan = plan
        self.verbose = verbose
        self.confirm = confirm
        self.token_timeout = token_timeout
        self.max_attempts = max_attempts
        self.outcome: Optional[FlashOutcome] = None
        self.error: Optional[BaseException] = None
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the worker to stop."""
        self._cancel.set()

    def run(self) -> None:
        try:
            self.outcome = run_flash(
                self.transport, self.plan,
                cancel=self._cancel,
                verbose=self.verbose,
                confirm=self.confirm,
                token_timeout=self.token_timeout,
                max_attempts=self.max_attempts,
            )
        except Exception as e:
            self.error = e
