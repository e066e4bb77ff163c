"""
Command Plan
============

The command plan is the immutable description of one flashing run: which
command the device loader should execute, which images go over the wire,
and the addresses each image is loaded at and started from.

It is built by the command line (or any other caller) before the serial
port is touched, and is read-only input to the handshake sequencer in
dvflash.comms.boot.

Commands
--------
=====================  ==========  =========================================
Command                Flash       Phase sequence
=====================  ==========  =========================================
SAFE                   NOR         application only (run from DDR)
NOR_RESTORE            NOR         application only (written to NOR)
NOR/NAND_SREC_BURN     NOR/NAND    second-stage loader + application
NOR/NAND_BIN_BURN      NOR/NAND    second-stage loader + application
NOR/NAND_GLOBAL_ERASE  NOR/NAND    erase
=====================  ==========  =========================================

Default Addresses
-----------------
- First-stage loader exec: 0x0100 (0x29E8 NOR UBL, 0x236C NAND UBL)
- Second-stage loader load: 0x81070000
- Application load and entry: 0x81080000
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final, Optional

from dvflash.errors import PlanError


# =============================================================================
# Magic Codes
# =============================================================================

class MagicFlag(IntEnum):
    """
    32-bit command and boot-mode codes understood by the device loader.

    The first group selects how the loader boots an image; the second
    group are flashing commands.
    """
    SAFE = 0xA1ACED00
    DMA = 0xA1ACED11
    IC = 0xA1ACED22
    FAST = 0xA1ACED33
    DMA_IC = 0xA1ACED44
    DMA_IC_FAST = 0xA1ACED55
    BIN_IMG = 0xA1ACED66
    NOR_RESTORE = 0xA1ACED77
    NOR_SREC_BURN = 0xA1ACED88
    NOR_BIN_BURN = 0xA1ACED99
    NOR_GLOBAL_ERASE = 0xA1ACEDAA
    NAND_SREC_BURN = 0xA1ACEDBB
    NAND_BIN_BURN = 0xA1ACEDCC
    NAND_GLOBAL_ERASE = 0xA1ACEDDD
    INVALID = 0xFFFFFFFF


class FlashType(IntEnum):
    """Flash family targeted by the run."""
    NONE = 0
    NOR = 1
    NAND = 2


class PayloadFormat(Enum):
    """Encoding of binary images on the wire."""
    SREC = "srec"
    BINARY = "binary"


class Operation(Enum):
    """Phase sequence selected by a command."""
    BOOT_APPLICATION = "boot-application"
    LOADER_AND_APPLICATION = "loader-and-application"
    ERASE = "erase"


# =============================================================================
# Defaults
# =============================================================================

# Exec address of a generic first-stage loader in internal RAM
DEFAULT_UART_UBL_EXEC: Final[int] = 0x0100

# Exec addresses of the embedded flash loaders
NOR_UBL_EXEC: Final[int] = 0x29E8
NAND_UBL_EXEC: Final[int] = 0x236C

# DDR addresses used by the device loader
DEFAULT_APP_ADDRESS: Final[int] = 0x81080000
DEFAULT_FLASH_UBL_LOAD: Final[int] = 0x81070000

# Largest value a 4-hex-digit frame field can carry
MAX_SHORT_FIELD: Final[int] = 0xFFFF

# Largest value an 8-hex-digit frame field can carry
MAX_LONG_FIELD: Final[int] = 0xFFFFFFFF

COMMAND_OPERATIONS: Final[dict[MagicFlag, Operation]] = {
    MagicFlag.SAFE: Operation.BOOT_APPLICATION,
    MagicFlag.NOR_RESTORE: Operation.BOOT_APPLICATION,
    MagicFlag.NOR_SREC_BURN: Operation.LOADER_AND_APPLICATION,
    MagicFlag.NOR_BIN_BURN: Operation.LOADER_AND_APPLICATION,
    MagicFlag.NAND_SREC_BURN: Operation.LOADER_AND_APPLICATION,
    MagicFlag.NAND_BIN_BURN: Operation.LOADER_AND_APPLICATION,
    MagicFlag.NOR_GLOBAL_ERASE: Operation.ERASE,
    MagicFlag.NAND_GLOBAL_ERASE: Operation.ERASE,
}

BINARY_BURN_COMMANDS: Final[frozenset[MagicFlag]] = frozenset({
    MagicFlag.NOR_BIN_BURN,
    MagicFlag.NAND_BIN_BURN,
})

COMMAND_FLASH_TYPES: Final[dict[MagicFlag, FlashType]] = {
    MagicFlag.SAFE: FlashType.NOR,
    MagicFlag.NOR_RESTORE: FlashType.NOR,
    MagicFlag.NOR_SREC_BURN: FlashType.NOR,
    MagicFlag.NOR_BIN_BURN: FlashType.NOR,
    MagicFlag.NOR_GLOBAL_ERASE: FlashType.NOR,
    MagicFlag.NAND_SREC_BURN: FlashType.NAND,
    MagicFlag.NAND_BIN_BURN: FlashType.NAND,
    MagicFlag.NAND_GLOBAL_ERASE: FlashType.NAND,
}


def first_stage_exec_for(flash_type: FlashType) -> int:
    """Return the first-stage loader exec address for a flash family."""
    if flash_type == FlashType.NOR:
        return NOR_UBL_EXEC
    if flash_type == FlashType.NAND:
        return NAND_UBL_EXEC
    return DEFAULT_UART_UBL_EXEC


# =============================================================================
# Command Plan
# =============================================================================

@dataclass(frozen=True)
class CommandPlan:
    """
    Immutable description of one flashing run.

    Attributes:
        command: Command code sent in the CMD frame.
        flash_type: Flash family; selects loader images and addresses.
        app_image: Application file contents (None for erase).
        app_name: Application file name, used for the S0 module name.
        app_load_address: Where the device loads the application.
        app_entry_point: Execution address announced in the ACK frame.
        first_stage_required: Send the first-stage loader to the boot ROM.
        first_stage_image: First-stage loader image, including its stub.
        first_stage_exec_address: Exec address announced to the boot ROM.
        loader_image: Second-stage loader written to flash, including stub.
        loader_name: Second-stage loader file name.
        loader_load_address: Where the device loads the second-stage loader.
        loader_exec_address: Exec address of the second-stage loader.
        use_embedded_loader: The second-stage loader is the embedded image.
        payload_format: Wire encoding for binary images.
    """
    command: MagicFlag
    flash_type: FlashType = FlashType.NONE
    app_image: Optional[bytes] = None
    app_name: str = ""
    app_load_address: int = DEFAULT_APP_ADDRESS
    app_entry_point: int = DEFAULT_APP_ADDRESS
    first_stage_required: bool = True
    first_stage_image: Optional[bytes] = None
    first_stage_exec_address: int = DEFAULT_UART_UBL_EXEC
    loader_image: Optional[bytes] = None
    loader_name: str = ""
    loader_load_address: int = DEFAULT_FLASH_UBL_LOAD
    loader_exec_address: int = DEFAULT_UART_UBL_EXEC
    use_embedded_loader: bool = True
    payload_format: PayloadFormat = PayloadFormat.SREC

    @property
    def operation(self) -> Optional[Operation]:
        """Phase sequence for the command, or None if it has none."""
        return COMMAND_OPERATIONS.get(self.command)

    @property
    def app_magic(self) -> MagicFlag:
        """Boot-mode code announced in the application ACK frame."""
        if self.command in BINARY_BURN_COMMANDS:
            return MagicFlag.BIN_IMG
        return MagicFlag.SAFE

    @property
    def strip_loader_stub(self) -> bool:
        """NAND loaders are written without their 256-byte stub."""
        return self.flash_type == FlashType.NAND

    def validate(self) -> None:
        """
        Check that the plan can be transmitted.

        Raises:
            PlanError: If a required image is missing, an address does
                not fit its protocol field, or the application runs past
                the end of the 32-bit address space.
        """
        operation = self.operation
        if operation is None:
            raise PlanError(f"Command 0x{int(self.command):08X} has no phase sequence")

        if self.first_stage_required and self.first_stage_image is None:
            raise PlanError("First-stage loader image is required")

        if operation != Operation.ERASE and self.app_image is None:
            raise PlanError("Application image is required")

        if operation == Operation.LOADER_AND_APPLICATION and self.loader_image is None:
            raise PlanError("Second-stage loader image is required")

        _check_field("first-stage exec address", self.first_stage_exec_address, MAX_SHORT_FIELD)
        _check_field("loader exec address", self.loader_exec_address, MAX_SHORT_FIELD)
        _check_field("application entry point", self.app_entry_point, MAX_LONG_FIELD)
        _check_field("application load address", self.app_load_address, MAX_LONG_FIELD)
        _check_field("loader load address", self.loader_load_address, MAX_LONG_FIELD)

        if self.app_image is not None:
            _check_field(
                "application end address",
                self.app_load_address + max(len(self.app_image), 1) - 1,
                MAX_LONG_FIELD,
            )

    def describe(self) -> str:
        """One-line summary of what the run will do."""
        operation = self.operation
        family = self.flash_type.name
        if operation == Operation.ERASE:
            return f"Globally erasing {family} flash."
        if operation == Operation.LOADER_AND_APPLICATION:
            loader = self.loader_name or "embedded UBL"
            return f"Flashing {family} with {loader} and {self.app_name}."
        if self.command == MagicFlag.NOR_RESTORE:
            return f"Restoring NOR flash with {self.app_name}."
        return f"Sending and running application found in {self.app_name}."


def _check_field(name: str, value: int, limit: int) -> None:
    if not 0 <= value <= limit:
        raise PlanError(f"{name} 0x{value:X} does not fit its frame field")


# =============================================================================
# Plan Factory
# =============================================================================

def build_plan(
    command: MagicFlag,
    app_image: Optional[bytes] = None,
    app_name: str = "",
    entry_point: Optional[int] = None,
    first_stage_required: bool = True,
    first_stage_image: Optional[bytes] = None,
    loader_image: Optional[bytes] = None,
    loader_name: str = "",
    payload_format: PayloadFormat = PayloadFormat.SREC,
) -> CommandPlan:
    """
    Build and validate a command plan with the default addresses.

    The flash family follows from the command. The first-stage exec address
    is the family's UBL exec address. When no external second-stage loader
    is given, the embedded loader (the first-stage image) is burned and runs
    from the same address.

    Args:
        command: Command code.
        app_image: Application file contents.
        app_name: Application file name.
        entry_point: Application entry point (defaults to the load address).
        first_stage_required: Whether the boot ROM stage runs.
        first_stage_image: Embedded loader image for the flash family.
        loader_image: External second-stage loader, or None for embedded.
        loader_name: External loader file name.
        payload_format: Wire encoding for binary images.

    Returns:
        A validated CommandPlan.

    Raises:
        PlanError: If the plan cannot be transmitted.
    """
    flash_type = COMMAND_FLASH_TYPES.get(command, FlashType.NONE)
    first_stage_exec = first_stage_exec_for(flash_type)

    use_embedded = loader_image is None
    if use_embedded:
        loader_exec = first_stage_exec
        if COMMAND_OPERATIONS.get(command) == Operation.LOADER_AND_APPLICATION:
            loader_image = first_stage_image
    else:
        loader_exec = DEFAULT_UART_UBL_EXEC

    plan = CommandPlan(
        command=command,
        flash_type=flash_type,
        app_image=app_image,
        app_name=app_name,
        app_load_address=DEFAULT_APP_ADDRESS,
        app_entry_point=DEFAULT_APP_ADDRESS if entry_point is None else entry_point,
        first_stage_required=first_stage_required,
        first_stage_image=first_stage_image,
        first_stage_exec_address=first_stage_exec,
        loader_image=loader_image,
        loader_name=loader_name,
        loader_load_address=DEFAULT_FLASH_UBL_LOAD,
        loader_exec_address=loader_exec,
        use_embedded_loader=use_embedded,
        payload_format=payload_format,
    )
    plan.validate()
    return plan
