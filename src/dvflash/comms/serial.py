"""
Serial Port Utilities for DM644x Boot
=====================================

Opens and enumerates the host serial ports wired to the board's UART0.

The DM644x ROM boot loader listens at 115200 baud, 8 data bits, no parity,
one stop bit and no flow control. Those settings are fixed here; only the
device name (and, for boards strapped differently, the baud rate) varies.

Ports are opened with a short read timeout. The handshake worker reads one
byte at a time, and every timed-out read is a chance to notice a cancel
request, so the timeout bounds how long Ctrl+C takes to stop a run.
"""

import logging
import os
from dataclasses import dataclass
from typing import Final, Optional

import serial
import serial.tools.list_ports

from dvflash.errors import ConnectionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Baud rate of the DM644x ROM boot loader
DEFAULT_BAUD_RATE: Final[int] = 115200

# Per-read timeout in seconds; bounds the cancellation latency
READ_TIMEOUT: Final[float] = 0.25

# First hardware serial port on each platform
DEFAULT_POSIX_PORT: Final[str] = "/dev/ttyS0"
DEFAULT_WINDOWS_PORT: Final[str] = "COM1"

# Hints added to open failures, keyed by lowercase fragments of the
# pyserial error text
_OPEN_ERROR_HINTS: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (("permission denied",),
     "Permission denied on {device}. On Linux, add yourself to the "
     "'dialout' group and log in again."),
    (("no such file", "not found", "filenotfound"),
     "Serial port not found: {device}. "
     "Use 'dvflash ports' to list available ports."),
    (("busy", "in use", "access is denied"),
     "Serial port {device} is in use by another program."),
)


# =============================================================================
# Port Information
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    A serial port found on the host.

    Attributes:
        device: Name passed to open_serial_port ('/dev/ttyUSB0', 'COM3').
        description: Driver description, possibly empty.
        manufacturer: Adapter vendor, when the driver reports one.
        vid: USB vendor ID, None unless the port is a USB adapter.
        pid: USB product ID, None unless the port is a USB adapter.
    """

    device: str
    description: str
    manufacturer: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None

    @classmethod
    def from_pyserial(cls, info) -> "PortInfo":
        """Convert a serial.tools.list_ports entry."""
        return cls(
            device=info.device,
            description=info.description or "",
            manufacturer=info.manufacturer,
            vid=info.vid,
            pid=info.pid,
        )

    @property
    def is_usb(self) -> bool:
        """True for USB-serial adapters."""
        return self.vid is not None

    @property
    def usb_id(self) -> str:
        """USB ID as 'VVVV:PPPP', or an empty string for other ports."""
        if not self.is_usb:
            return ""
        pid = "????" if self.pid is None else f"{self.pid:04X}"
        return f"{self.vid:04X}:{pid}"

    def __str__(self) -> str:
        if self.description and self.description != self.device:
            return f"{self.device} - {self.description}"
        return self.device


# =============================================================================
# Port Enumeration
# =============================================================================

def list_serial_ports() -> list[PortInfo]:
    """Return the serial ports present on the host, sorted by device name."""
    found = [PortInfo.from_pyserial(p) for p in serial.tools.list_ports.comports()]
    for port in found:
        logger.debug("Found port: %s", port)
    return sorted(found, key=lambda p: p.device)


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """
    Render ports for the `dvflash ports` command.

    Args:
        ports: Ports to show.
        verbose: Add description, manufacturer and USB ID lines.

    Returns:
        Indented text, one entry per port.
    """
    if not ports:
        return "No serial ports found."

    if not verbose:
        return "\n".join(f"  {port}" for port in ports)

    entries = []
    for port in ports:
        details = [
            ("Description", port.description),
            ("Manufacturer", port.manufacturer),
            ("USB VID:PID", port.usb_id),
        ]
        entry = [f"  {port.device}"]
        entry += [f"    {label}: {value}" for label, value in details if value]
        entries.append("\n".join(entry))
    return "\n".join(entries)


def get_default_port() -> str:
    """Return the port used when -p is not given."""
    return DEFAULT_WINDOWS_PORT if os.name == "nt" else DEFAULT_POSIX_PORT


# =============================================================================
# Opening and Closing
# =============================================================================

def _explain_open_error(device: str, error: Exception) -> str:
    text = str(error).lower()
    for fragments, hint in _OPEN_ERROR_HINTS:
        if any(fragment in text for fragment in fragments):
            return hint.format(device=device)
    return f"Cannot open {device}: {error}"


def open_serial_port(
    device: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = READ_TIMEOUT,
) -> serial.Serial:
    """
    Open a port with the boot ROM's line settings.

    Both buffers are cleared so that output from a previous session is not
    mistaken for a handshake token.

    Args:
        device: Port name.
        baud_rate: Line speed.
        timeout: Read timeout in seconds.

    Returns:
        The open serial.Serial.

    Raises:
        ConnectionError: If the port cannot be opened.
    """
    logger.debug("Opening %s at %d baud, 8N1", device, baud_rate)

    try:
        port = serial.Serial(
            port=device,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
        )
        port.reset_input_buffer()
        port.reset_output_buffer()
    except serial.SerialException as e:
        raise ConnectionError(_explain_open_error(device, e))

    return port


def close_serial_port(port: Optional[serial.Serial]) -> None:
    """Close a port if it is open; failures are logged, not raised."""
    if port is None or not port.is_open:
        return
    try:
        port.close()
    except (serial.SerialException, OSError) as e:
        logger.warning("Could not close %s: %s", getattr(port, "port", "port"), e)
    else:
        logger.debug("Closed %s", getattr(port, "port", "port"))
