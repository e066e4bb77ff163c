"""
Byte Transport and Token Reader
===============================

The handshake sequencer talks to the device through a minimal byte-stream
capability rather than a concrete serial port, so the protocol can be
driven by a scripted fake in tests and by pyserial in production.

Transport Capability
--------------------
- read_byte(): next received byte, or None when the read timed out
- write(data): send bytes (str is sent as ASCII)
- discard_input(): drop everything buffered on the receive side

Token Lines
-----------
The DM644x boot ROM and UART loader announce their state with short text
tokens. Each token is NUL terminated, while diagnostic output from the
loader ends in CR or LF, so the reader splits the stream into lines at
any of NUL, LF or CR:

    " BOOTME\\0"   "  BEGIN\\0"   "   DONE\\0"   "PSPBootMode = UART\\r\\n"

A line holds at most 255 bytes. A trailing LF or CR is dropped but a
trailing NUL is kept, because the protocol tokens include it.
"""

import logging
import threading
import time
from typing import Final, Optional, Protocol, Union

import serial

from dvflash.errors import CancelledError, ConnectionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Longest line accumulated before it is evaluated
MAX_LINE_LENGTH: Final[int] = 255

# Bytes that end a line
LINE_TERMINATORS: Final[frozenset[int]] = frozenset({0x00, 0x0A, 0x0D})

# Bytes dropped from the end of a line
STRIPPED_TERMINATORS: Final[frozenset[int]] = frozenset({0x0A, 0x0D})


# =============================================================================
# Transport Capability
# =============================================================================

class Transport(Protocol):
    """Byte-stream capability used by the handshake sequencer."""

    def read_byte(self) -> Optional[int]:
        """Return the next byte, or None if the read timed out."""
        ...

    def write(self, data: Union[bytes, str]) -> None:
        """Send bytes to the device."""
        ...

    def discard_input(self) -> None:
        """Drop all buffered input."""
        ...


def _to_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("ascii")
    return bytes(data)


class SerialTransport:
    """
    Transport backed by a pyserial port.

    Every pyserial or OS level failure surfaces as ConnectionError, which
    the sequencer treats as fatal.

    Args:
        port: Opened serial.Serial, ideally with a short read timeout so
            that cancellation is noticed between bytes.
    """

    def __init__(self, port: "serial.Serial"):
        self.port = port

    def read_byte(self) -> Optional[int]:
        try:
            data = self.port.read(1)
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Serial read failed: {e}")
        if not data:
            return None
        return data[0]

    def write(self, data: Union[bytes, str]) -> None:
        payload = _to_bytes(data)
        try:
            self.port.write(payload)
            self.port.flush()
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Serial write failed: {e}")
        logger.debug("Sent %d bytes", len(payload))

    def discard_input(self) -> None:
        try:
            self.port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Cannot flush serial input: {e}")


# =============================================================================
# Token Reader
# =============================================================================

class TokenReader:
    """
    Reads device lines and matches them against expected tokens.

    Reading is cooperative: every timed-out byte read checks the cancel
    event, and an optional per-wait timeout turns a silent device into a
    mismatch instead of blocking forever.

    Args:
        transport: Byte source.
        cancel: Event that aborts the wait with CancelledError when set.
        timeout: Seconds allowed per wait, or None to wait indefinitely.
    """

    def __init__(
        self,
        transport: Transport,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.cancel = cancel
        self.timeout = timeout

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError("Operation cancelled")

    def read_line(self, deadline: Optional[float] = None) -> Optional[str]:
        """
        Read one line from the device.

        Args:
            deadline: time.monotonic() value after which to give up.

        Returns:
            The decoded line (possibly empty), or None if the deadline
            passed first, even while bytes are still arriving.

        Raises:
            CancelledError: If the cancel event is set.
            ConnectionError: If the transport fails.
        """
        buffer = bytearray()

        while True:
            # Checked per byte so a chatty device still times out
            if deadline is not None and time.monotonic() >= deadline:
                return None

            byte = self.transport.read_byte()
            if byte is None:
                self._check_cancelled()
                continue

            buffer.append(byte)
            if byte in LINE_TERMINATORS or len(buffer) >= MAX_LINE_LENGTH:
                break

        if buffer[-1] in STRIPPED_TERMINATORS:
            del buffer[-1]
        return buffer.decode("ascii", errors="replace")

    def wait_for(self, expected: str, alternate: str, verbose: bool = False) -> bool:
        """
        Wait until a line contains the expected or the alternate token.

        The alternate token is checked first and signals that the device
        is not where the protocol expects it. When both tokens are the
        same, seeing it counts as success.

        Args:
            expected: Token that means the step succeeded.
            alternate: Token that means the step failed.
            verbose: Log every device line at INFO rather than DEBUG.

        Returns:
            True if the expected token arrived, False on the alternate
            token or when the wait timed out.

        Raises:
            CancelledError: If the cancel event is set.
            ConnectionError: If the transport fails.
        """
        deadline = None
        if self.timeout is not None:
            deadline = time.monotonic() + self.timeout

        while True:
            self._check_cancelled()
            line = self.read_line(deadline)

            if line is None:
                logger.debug("Timed out waiting for %r", expected)
                return False

            if not line:
                continue

            logger.log(
                logging.INFO if verbose else logging.DEBUG,
                "DVEVM:\t%s", line.rstrip("\0"),
            )

            if alternate in line:
                return expected == alternate
            if expected in line:
                return True
