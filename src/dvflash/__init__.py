"""
DVFlash - Serial Boot and Flash Utility for TI DM644x (DaVinci)
===============================================================

This package implements the host side of the DM644x UART boot protocol:
it feeds a user boot loader (UBL) to the chip's mask-ROM boot loader over
the serial port, then drives the UBL to run an application from DDR,
burn NOR or NAND flash, or erase it.

Main Components
---------------
- **comms.crc**: Table-driven CRC-32 engine and the CRC table the boot ROM
  receives
- **srec**: Motorola S-record encoder and recognizer
- **comms.boot**: Multi-phase handshake sequencer
- **plan**: Command plan, magic codes and default addresses
- **images**: Embedded loader lookup and file loading

Quick Start
-----------
    >>> from dvflash import build_plan, MagicFlag, run_flash, SerialTransport
    >>> from dvflash.comms.serial import open_serial_port
    >>> plan = build_plan(MagicFlag.SAFE, app_image=data, app_name="app.bin",
    ...                   first_stage_image=ubl)
    >>> outcome = run_flash(SerialTransport(open_serial_port("/dev/ttyS0")), plan)
    >>> outcome.succeeded
    True

Or use the command-line tool:
    $ dvflash -p /dev/ttyUSB0 boot app.bin
    $ dvflash flash nand u-boot.bin
    $ dvflash erase nor

Version History
---------------
1.0.0 - Initial release
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from dvflash.errors import (
    DVFlashError,
    PlanError,
    ImageError,
    MissingInputError,
    RecordFormatError,
    CommsError,
    ConnectionError,
    ProtocolError,
    TimeoutError,
    CancelledError,
    TransferError,
    FinalConfirmationError,
)
from dvflash.plan import (
    CommandPlan,
    FlashType,
    MagicFlag,
    Operation,
    PayloadFormat,
    build_plan,
)
from dvflash.comms.crc import Crc32, loader_crc32, standard_crc32
from dvflash.comms.transport import SerialTransport, Transport
from dvflash.comms.boot import BootSequencer, FlashOutcome, FlashWorker, run_flash
from dvflash.srec.encoder import encode, is_pre_encoded

__all__ = [
    "__version__",
    # Errors
    "DVFlashError",
    "PlanError",
    "ImageError",
    "MissingInputError",
    "RecordFormatError",
    "CommsError",
    "ConnectionError",
    "ProtocolError",
    "TimeoutError",
    "CancelledError",
    "TransferError",
    "FinalConfirmationError",
    # Plan
    "CommandPlan",
    "FlashType",
    "MagicFlag",
    "Operation",
    "PayloadFormat",
    "build_plan",
    # Checksums and records
    "Crc32",
    "loader_crc32",
    "standard_crc32",
    "encode",
    "is_pre_encoded",
    # Handshake
    "Transport",
    "SerialTransport",
    "BootSequencer",
    "FlashOutcome",
    "FlashWorker",
    "run_flash",
]
