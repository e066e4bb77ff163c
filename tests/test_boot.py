"""
Tests for the Boot Handshake
============================

Tests for the DM644x UART boot protocol sequencer, driven by a scripted
device instead of a serial port.

Test Categories
---------------
1. Frame Tests: Fixed-width header frames and loader word encoding
2. Application Tests: SENDAPP exchange and its final confirmation
3. Loader Tests: SENDUBL exchange followed by the application
4. Erase Tests: Global erase command
5. First-Stage Tests: Boot ROM exchange and boot-mode check
6. Control Tests: Restarts, attempt limits, cancellation and the worker
"""

import logging
import threading
import time

import pytest

from dvflash.comms.boot import (
    BOOTPSP,
    CMD,
    BootSequencer,
    FlashWorker,
    PhaseState,
    build_app_ack_frame,
    build_command_frame,
    build_loader_ack_frame,
    build_rbl_ack_frame,
    encode_loader_words,
    run_flash,
)
from dvflash.comms.crc import loader_crc32
from dvflash.errors import (
    CancelledError,
    ConnectionError,
    FinalConfirmationError,
    PlanError,
    ProtocolError,
    TimeoutError,
)
from dvflash.plan import (
    CommandPlan,
    FlashType,
    MagicFlag,
    PayloadFormat,
    build_plan,
)
from dvflash.srec.encoder import encode, module_name_for

BOOTME_TOKEN = b" BOOTME\0"
BOOTPSP_TOKEN = b"BOOTPSP\0"
SENDAPP_TOKEN = b"SENDAPP\0"
SENDUBL_TOKEN = b"SENDUBL\0"
BEGIN_TOKEN = b"  BEGIN\0"
DONE_TOKEN = b"   DONE\0"

# Short per-wait timeout for tests that expect a token to be missing
MISSING_TOKEN_TIMEOUT = 0.05


class ScriptedDevice:
    """
    Transport that plays the device side of the handshake.

    replies[0] is readable immediately; replies[n] becomes readable after
    the host's n-th write. When nothing is left to read, reads time out
    after a short sleep, and a long silence raises ConnectionError so a
    broken test fails instead of hanging.
    """

    IDLE_LIMIT = 1000

    def __init__(self, replies):
        self.pending = list(replies)
        self.buffer = bytearray()
        self.writes = []
        self.discards = 0
        self.idle = 0
        self._release()

    def _release(self):
        if self.pending:
            self.buffer.extend(self.pending.pop(0))

    def read_byte(self):
        if self.buffer:
            self.idle = 0
            return self.buffer.pop(0)
        self.idle += 1
        if self.idle > self.IDLE_LIMIT:
            raise ConnectionError("Scripted device went silent")
        time.sleep(0.005)
        return None

    def write(self, data):
        self.writes.append(bytes(data))
        self._release()

    def discard_input(self):
        self.discards += 1


class NoisyDevice(ScriptedDevice):
    """Scripted device that prints noise once its script runs out."""

    NOISE = b"DM644x UBL\r\n"

    def __init__(self, replies):
        super().__init__(replies)
        self.noise_sent = 0

    def read_byte(self):
        if self.buffer or self.pending:
            return super().read_byte()
        if self.noise_sent > 5000:
            raise ConnectionError("Noisy device exceeded its byte limit")
        byte = self.NOISE[self.noise_sent % len(self.NOISE)]
        self.noise_sent += 1
        time.sleep(0.001)
        return byte


def app_plan(command=MagicFlag.SAFE, image=bytes(range(40)), fmt=PayloadFormat.BINARY):
    """Application plan that skips the boot ROM stage."""
    return CommandPlan(
        command=command,
        flash_type=FlashType.NOR,
        app_image=image,
        app_name="app.bin",
        first_stage_required=False,
        payload_format=fmt,
    )


def app_replies(final=DONE_TOKEN * 3):
    """Device replies for a command followed by an application exchange."""
    return [BOOTPSP_TOKEN, SENDAPP_TOKEN, BEGIN_TOKEN, final]


# =============================================================================
# Frame Tests
# =============================================================================

class TestFrames:
    """Tests for header frame construction."""

    def test_rbl_ack_frame(self):
        """Boot ROM ACK frame is ACK, CRC(8), LEN(4), EXEC(4), padding."""
        frame = build_rbl_ack_frame(0x340BC6D9, 0x3800, 0x29E8)
        assert frame == b"    ACK\x00340BC6D9380029E80000"
        assert len(frame) == 28

    def test_command_frame(self):
        """Command frame is CMD followed by 8 hex digits."""
        frame = build_command_frame(MagicFlag.NAND_GLOBAL_ERASE)
        assert frame == b"    CMD\x00A1ACEDDD"
        assert len(frame) == 16

    def test_app_ack_frame(self):
        """Application ACK frame is 36 bytes of uppercase hex fields."""
        frame = build_app_ack_frame(MagicFlag.SAFE, 0x81080000, 0x28)
        assert frame == b"    ACK\x00A1ACED0081080000000000280000"
        assert len(frame) == 36

    def test_loader_ack_frame(self):
        """SENDUBL ACK frame carries the fixed 8000 field and a 4-digit exec."""
        frame = build_loader_ack_frame(MagicFlag.SAFE, 0x236C, 0x1234)
        assert frame == b"    ACK\x00A1ACED008000236C000012340000"
        assert len(frame) == 36

    def test_field_overflow(self):
        """Values wider than their field are rejected."""
        with pytest.raises(PlanError):
            build_rbl_ack_frame(0, 0x10000, 0)
        with pytest.raises(PlanError):
            build_loader_ack_frame(MagicFlag.SAFE, 0x10000, 0)

    def test_loader_words_little_endian(self):
        """Loader bytes are sent as hex of little-endian 32-bit words."""
        assert encode_loader_words(bytes([0x78, 0x56, 0x34, 0x12])) == b"12345678"

    def test_loader_words_padded(self):
        """A partial final word is zero padded."""
        assert encode_loader_words(b"\x01\x02") == b"00000201"

    def test_loader_words_whole_image(self):
        """A whole-word loader is sent in full with no extra word."""
        image = bytes(range(12))
        assert encode_loader_words(image) == b"03020100070605040B0A0908"

    def test_command_token_layout(self):
        """Protocol tokens are 8 bytes including their NUL."""
        assert len(CMD) == 8
        assert len(BOOTPSP) == 8


# =============================================================================
# Application Tests
# =============================================================================

class TestApplicationPhase:
    """Tests for sending and running an application."""

    def test_raw_application(self):
        """A 40-byte raw image is announced with size 0x28 and sent as-is."""
        image = bytes(range(40))
        device = ScriptedDevice(app_replies())

        outcome = run_flash(device, app_plan(image=image))

        assert outcome.succeeded
        assert outcome.summary == "Operation completed successfully."
        assert device.writes == [
            b"    CMD\x00A1ACED00",
            b"    ACK\x00A1ACED00" + b"81080000" + b"00000028" + b"0000",
            image,
        ]

    def test_srec_application(self):
        """Binary images are S-record encoded by default."""
        image = bytes(40)
        device = ScriptedDevice(app_replies())

        outcome = run_flash(device, app_plan(image=image, fmt=PayloadFormat.SREC))

        expected = encode(image, 0x81080000, module_name=module_name_for("app.bin"))
        assert outcome.succeeded
        assert device.writes[2] == expected
        assert device.writes[1][24:32] == f"{len(expected):08X}".encode("ascii")

    def test_pre_encoded_application(self):
        """S-record input is sent unchanged."""
        text = encode(bytes(20), 0x81080000, module_name="prebuilt.srec")
        device = ScriptedDevice(app_replies())

        outcome = run_flash(device, app_plan(image=text, fmt=PayloadFormat.SREC))

        assert outcome.succeeded
        assert device.writes[2] == text

    def test_entry_point_in_ack(self):
        """The entry point field follows the plan."""
        plan = build_plan(
            MagicFlag.SAFE, app_image=bytes(4), app_name="app.bin",
            entry_point=0x81080100, first_stage_required=False,
            payload_format=PayloadFormat.BINARY,
        )
        device = ScriptedDevice(app_replies())

        assert run_flash(device, plan).succeeded
        assert device.writes[1][16:24] == b"81080100"

    def test_restore_command(self):
        """Restore sends the NOR restore command."""
        device = ScriptedDevice(app_replies())
        assert run_flash(device, app_plan(command=MagicFlag.NOR_RESTORE)).succeeded
        assert device.writes[0] == b"    CMD\x00A1ACED77"

    def test_phase_discards_input(self):
        """Stale input is discarded before the phase starts."""
        device = ScriptedDevice(app_replies())
        run_flash(device, app_plan())
        assert device.discards == 1

    def test_missing_final_done_is_fatal(self):
        """Without the third DONE the run fails."""
        device = ScriptedDevice(app_replies(final=DONE_TOKEN * 2))

        outcome = run_flash(device, app_plan(), token_timeout=MISSING_TOKEN_TIMEOUT)

        assert not outcome.succeeded
        assert outcome.summary == "Final DONE not returned. Command failed on the device."
        assert sum(w.startswith(b"    CMD") for w in device.writes) == 1

    def test_missing_final_done_with_chatty_device(self):
        """Device output that never contains the third DONE still times out."""
        device = NoisyDevice(app_replies(final=DONE_TOKEN * 2))

        sequencer = BootSequencer(device, app_plan(), token_timeout=0.2)
        with pytest.raises(FinalConfirmationError):
            sequencer.run()
        assert device.noise_sent > 0

    def test_final_bootpsp_is_fatal(self):
        """A BOOTPSP in place of the third DONE is not retried."""
        device = ScriptedDevice(app_replies(final=DONE_TOKEN * 2 + BOOTPSP_TOKEN))

        sequencer = BootSequencer(device, app_plan())
        with pytest.raises(FinalConfirmationError):
            sequencer.run()
        assert sequencer.state == PhaseState.AWAITING_THIRD_DONE

    def test_bootpsp_restarts_phase(self):
        """BOOTPSP in place of SENDAPP restarts from the command."""
        device = ScriptedDevice([
            BOOTPSP_TOKEN,
            BOOTPSP_TOKEN * 2,
            SENDAPP_TOKEN,
            BEGIN_TOKEN,
            DONE_TOKEN * 3,
        ])

        outcome = run_flash(device, app_plan())

        assert outcome.succeeded
        commands = [w for w in device.writes if w.startswith(b"    CMD")]
        assert len(commands) == 2
        assert device.discards == 2

    def test_device_output_logged(self, caplog):
        """In verbose mode device lines are logged at INFO."""
        device = ScriptedDevice(app_replies())
        with caplog.at_level(logging.INFO, logger="dvflash"):
            run_flash(device, app_plan(), verbose=True)
        assert "DVEVM:\tSENDAPP" in caplog.text
        assert "Operation completed successfully." in caplog.text


# =============================================================================
# Loader Tests
# =============================================================================

class TestLoaderPhase:
    """Tests for burning a second-stage loader and application."""

    def loader_plan(self, command=MagicFlag.NAND_SREC_BURN, loader=bytes(300)):
        return build_plan(
            command,
            app_image=bytes(range(48)),
            app_name="u-boot.bin",
            first_stage_required=False,
            loader_image=loader,
            loader_name="ubl.bin",
        )

    def loader_replies(self, final=DONE_TOKEN * 3):
        return [
            BOOTPSP_TOKEN,
            SENDUBL_TOKEN,
            BEGIN_TOKEN,
            DONE_TOKEN * 2 + SENDAPP_TOKEN,
            BEGIN_TOKEN,
            final,
        ]

    def test_nand_loader_stripped_and_encoded(self):
        """NAND loaders lose their stub and are S-record encoded."""
        loader = bytes(256) + bytes(range(44))
        plan = self.loader_plan(loader=loader)
        device = ScriptedDevice(self.loader_replies())

        outcome = run_flash(device, plan)

        expected = encode(loader, 0x81070000, strip_leading=True,
                          module_name=module_name_for("ubl.bin"))
        assert outcome.succeeded
        assert device.writes[0] == b"    CMD\x00A1ACEDBB"
        assert device.writes[1] == (
            b"    ACK\x00A1ACED00" + b"8000" + b"0100"
            + f"{len(expected):08X}".encode("ascii") + b"0000"
        )
        assert device.writes[2] == expected

    def test_nor_loader_not_stripped(self):
        """NOR loaders keep their stub."""
        loader = bytes(range(256)) + b"\x01\x02\x03\x04"
        device = ScriptedDevice(self.loader_replies())

        run_flash(device, self.loader_plan(MagicFlag.NOR_SREC_BURN, loader))

        expected = encode(loader, 0x81070000, module_name=module_name_for("ubl.bin"))
        assert device.writes[2] == expected

    def test_binary_burn_magic(self):
        """Binary burn commands announce the application as BIN_IMG."""
        device = ScriptedDevice(self.loader_replies())

        run_flash(device, self.loader_plan(MagicFlag.NAND_BIN_BURN))

        assert device.writes[3].startswith(b"    ACK\x00A1ACED66")

    def test_srec_burn_magic(self):
        """S-record burn commands announce the application as SAFE."""
        device = ScriptedDevice(self.loader_replies())

        run_flash(device, self.loader_plan(MagicFlag.NAND_SREC_BURN))

        assert device.writes[3].startswith(b"    ACK\x00A1ACED00")

    def test_final_done_best_effort(self):
        """A missing third DONE after burning is only a warning."""
        device = ScriptedDevice(self.loader_replies(final=DONE_TOKEN * 2))

        outcome = run_flash(device, self.loader_plan(), token_timeout=MISSING_TOKEN_TIMEOUT)

        assert outcome.succeeded
        assert len(device.writes) == 5

    def test_embedded_loader_exec_address(self):
        """The embedded NAND loader runs from the NAND UBL exec address."""
        ubl = bytes(256) + bytes(16)
        plan = build_plan(
            MagicFlag.NAND_SREC_BURN,
            app_image=bytes(8),
            app_name="app.bin",
            first_stage_required=False,
            first_stage_image=ubl,
        )
        device = ScriptedDevice(self.loader_replies())

        assert run_flash(device, plan).succeeded
        assert device.writes[1][20:24] == b"236C"


# =============================================================================
# Erase Tests
# =============================================================================

class TestErasePhase:
    """Tests for global flash erase."""

    def erase_plan(self, command=MagicFlag.NOR_GLOBAL_ERASE):
        return CommandPlan(command=command, flash_type=FlashType.NOR, first_stage_required=False)

    def test_erase(self):
        """Erase sends only the command and waits for DONE."""
        device = ScriptedDevice([BOOTPSP_TOKEN, DONE_TOKEN])

        outcome = run_flash(device, self.erase_plan())

        assert outcome.succeeded
        assert device.writes == [b"    CMD\x00A1ACEDAA"]

    def test_erase_retried(self):
        """BOOTPSP in place of DONE re-issues the erase command."""
        device = ScriptedDevice([BOOTPSP_TOKEN, BOOTPSP_TOKEN * 2, DONE_TOKEN])

        outcome = run_flash(device, self.erase_plan(MagicFlag.NAND_GLOBAL_ERASE))

        assert outcome.succeeded
        assert device.writes == [b"    CMD\x00A1ACEDDD"] * 2


# =============================================================================
# First-Stage Tests
# =============================================================================

class TestFirstStage:
    """Tests for the boot ROM exchange."""

    LOADER = bytes(range(8))
    UBL = bytes(256) + LOADER

    def first_stage_plan(self):
        return CommandPlan(
            command=MagicFlag.NOR_GLOBAL_ERASE,
            flash_type=FlashType.NOR,
            first_stage_required=True,
            first_stage_image=self.UBL,
            first_stage_exec_address=0x29E8,
        )

    def replies(self, boot_mode=b"PSPBootMode = UART\r\n"):
        return [
            BOOTME_TOKEN,
            BEGIN_TOKEN,
            DONE_TOKEN,
            DONE_TOKEN + boot_mode + BOOTPSP_TOKEN,
            DONE_TOKEN,
        ]

    def test_first_stage_frames(self):
        """The boot ROM receives header, CRC table and loader words."""
        device = ScriptedDevice(self.replies())

        outcome = run_flash(device, self.first_stage_plan())

        crc = loader_crc32()
        expected_crc = crc.checksum(self.LOADER)
        assert outcome.succeeded
        assert device.writes[0] == build_rbl_ack_frame(expected_crc, 8, 0x29E8)
        assert device.writes[1] == crc.table_hex().encode("ascii")
        assert device.writes[2] == b"0302010007060504"
        assert device.writes[3] == b"    CMD\x00A1ACEDAA"

    def test_bootme_restarts_first_stage(self):
        """BOOTME in place of BEGIN re-sends the header."""
        replies = self.replies()
        replies[1] = BOOTME_TOKEN * 2
        replies.insert(2, BEGIN_TOKEN)
        device = ScriptedDevice(replies)

        outcome = run_flash(device, self.first_stage_plan())

        assert outcome.succeeded
        assert device.writes[0] == device.writes[1]
        assert device.writes[0].startswith(b"    ACK\x00")

    def test_boot_mode_declined(self):
        """A board not in UART boot mode is cancelled when declined."""
        questions = []

        def refuse(question):
            questions.append(question)
            return False

        device = ScriptedDevice(self.replies(b"PSPBootMode = NAND\r\n"))

        outcome = run_flash(device, self.first_stage_plan(), confirm=refuse)

        assert not outcome.succeeded
        assert outcome.summary.startswith("Cancelled:")
        assert len(questions) == 1
        assert len(device.writes) == 3

    def test_boot_mode_accepted(self):
        """The operator may continue on a board not in UART boot mode."""
        device = ScriptedDevice(self.replies(b"PSPBootMode = NOR\r\n"))

        outcome = run_flash(device, self.first_stage_plan(), confirm=lambda q: True)

        assert outcome.succeeded

    def test_boot_mode_without_callback(self):
        """Without a confirm callback a wrong boot mode aborts the run."""
        device = ScriptedDevice(self.replies(b"PSPBootMode = NAND\r\n"))
        sequencer = BootSequencer(device, self.first_stage_plan())

        with pytest.raises(CancelledError, match="UART boot mode"):
            sequencer.run()


# =============================================================================
# Control Tests
# =============================================================================

class TestControl:
    """Tests for run control."""

    def test_unknown_command(self):
        """A command without a phase sequence is a protocol error."""
        plan = CommandPlan(command=MagicFlag.DMA, first_stage_required=False)
        device = ScriptedDevice([])

        with pytest.raises(ProtocolError, match="A1ACED11"):
            BootSequencer(device, plan).run()
        assert device.writes == []

    def test_unknown_command_outcome(self):
        """run_flash reports an unknown command as a failure."""
        plan = CommandPlan(command=MagicFlag.INVALID, first_stage_required=False)
        outcome = run_flash(ScriptedDevice([]), plan)
        assert not outcome.succeeded

    def test_unencodable_image_outcome(self):
        """An image that cannot be framed is reported as a failed run."""
        plan = CommandPlan(
            command=MagicFlag.SAFE,
            app_image=bytes(32),
            app_load_address=0xFFFFFFF8,
            first_stage_required=False,
        )
        device = ScriptedDevice(app_replies())

        outcome = run_flash(device, plan)

        assert not outcome.succeeded
        assert "do not fit" in outcome.summary
        assert device.writes == []

    def test_max_attempts(self):
        """A phase that keeps failing stops after max_attempts."""
        device = ScriptedDevice([BOOTPSP_TOKEN] + [BOOTPSP_TOKEN * 2] * 3)

        with pytest.raises(TimeoutError):
            BootSequencer(device, app_plan(), max_attempts=2).run()
        assert len(device.writes) == 2

    def test_cancel_before_run(self):
        """A pre-set cancel event stops the run before any write."""
        cancel = threading.Event()
        cancel.set()
        device = ScriptedDevice(app_replies())

        outcome = run_flash(device, app_plan(), cancel=cancel)

        assert not outcome.succeeded
        assert outcome.summary.startswith("Cancelled")
        assert device.writes == []

    def test_transport_failure(self):
        """A failing transport ends the run unsuccessfully."""
        device = ScriptedDevice([BOOTPSP_TOKEN])
        device.IDLE_LIMIT = 0

        outcome = run_flash(device, app_plan())

        assert not outcome.succeeded
        assert "silent" in outcome.summary

    def test_worker_completes(self):
        """The worker thread stores the outcome."""
        worker = FlashWorker(ScriptedDevice(app_replies()), app_plan())
        worker.start()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert worker.error is None
        assert worker.outcome.succeeded

    def test_worker_cancel(self):
        """Cancelling a waiting worker ends it promptly."""
        worker = FlashWorker(ScriptedDevice([]), app_plan())
        worker.start()
        time.sleep(0.05)
        worker.cancel()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert worker.cancelled
        assert not worker.outcome.succeeded
        assert worker.outcome.summary.startswith("Cancelled")
