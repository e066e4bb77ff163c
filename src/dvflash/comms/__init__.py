"""
DM644x Communication Module
===========================

Serial communication with the DM644x boot ROM and UART boot loader.

Module Structure
----------------
- **crc**: Table-driven CRC-32 engine
- **serial**: Serial port enumeration and configuration
- **transport**: Byte transport capability and token reader
- **boot**: Handshake sequencer, run outcome and worker thread

Quick Start
-----------
    from dvflash.comms import (
        SerialTransport,
        open_serial_port,
        close_serial_port,
        run_flash,
    )

    port = open_serial_port('/dev/ttyS0')
    try:
        outcome = run_flash(SerialTransport(port), plan, verbose=True)
    finally:
        close_serial_port(port)
    print(outcome.summary)

Serial Settings
---------------
- Baud rate: 115200
- 8 data bits, no parity, 1 stop bit
- No flow control
"""

from dvflash.comms.crc import (
    CRC32_CHECK_VALUE,
    Crc32,
    build_table,
    checksum,
    loader_crc32,
    reflect,
    standard_crc32,
)
from dvflash.comms.serial import (
    DEFAULT_BAUD_RATE,
    READ_TIMEOUT,
    PortInfo,
    close_serial_port,
    format_port_list,
    get_default_port,
    list_serial_ports,
    open_serial_port,
)
from dvflash.comms.transport import (
    MAX_LINE_LENGTH,
    SerialTransport,
    TokenReader,
    Transport,
)
from dvflash.comms.boot import (
    BootSequencer,
    FlashOutcome,
    FlashWorker,
    PhaseState,
    build_app_ack_frame,
    build_command_frame,
    build_loader_ack_frame,
    build_rbl_ack_frame,
    run_flash,
)

__all__ = [
    # CRC
    "CRC32_CHECK_VALUE",
    "Crc32",
    "build_table",
    "checksum",
    "loader_crc32",
    "reflect",
    "standard_crc32",
    # Serial
    "DEFAULT_BAUD_RATE",
    "READ_TIMEOUT",
    "PortInfo",
    "close_serial_port",
    "format_port_list",
    "get_default_port",
    "list_serial_ports",
    "open_serial_port",
    # Transport
    "MAX_LINE_LENGTH",
    "SerialTransport",
    "TokenReader",
    "Transport",
    # Handshake
    "BootSequencer",
    "FlashOutcome",
    "FlashWorker",
    "PhaseState",
    "build_app_ack_frame",
    "build_command_frame",
    "build_loader_ack_frame",
    "build_rbl_ack_frame",
    "run_flash",
]
