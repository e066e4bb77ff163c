"""
Motorola S-Record Definitions
=============================

This module defines the record types emitted when a binary image is framed
as Motorola S-record text for the device-side loader.

Record Format
-------------
Each record is one line of ASCII text:

    S <type> <count> <address> <data...> <checksum> LF

    type:      One digit record type
    count:     2 hex digits, number of bytes in address + data + checksum
    address:   4 hex digits (S0) or 8 hex digits (S3, S7), big-endian
    data:      2 hex digits per payload byte
    checksum:  2 hex digits, one's complement of the low 8 bits of the sum
               of the count, address and data bytes

Record Types
------------
Only the three types the boot protocol uses are supported:

- S0: Header record, carries an ASCII module name at address 0000
- S3: Data record, up to 16 payload bytes at a 32-bit load address
- S7: Termination record, carries the 32-bit execution start address

Example
-------
    >>> Record(RecordType.DATA, 0x81080000, b"\\x01\\x02").to_line()
    'S3078108000001026C'
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Final

from dvflash.errors import RecordFormatError


# =============================================================================
# Constants
# =============================================================================

# Every record line starts with this character
RECORD_START: Final[str] = "S"

# Maximum payload bytes per data record
MAX_DATA_BYTES: Final[int] = 16

# Line terminator written after each record
RECORD_TERMINATOR: Final[str] = "\n"


# =============================================================================
# Record Type
# =============================================================================

class RecordType(IntEnum):
    """
    S-record type digit.

    The value is the digit that follows the leading 'S' on the line.
    """
    HEADER = 0          # S0: module name
    DATA = 3            # S3: data, 32-bit address
    TERMINATION = 7     # S7: start address, 32-bit

    @property
    def address_size(self) -> int:
        """Number of address bytes carried by this record type."""
        return 2 if self == RecordType.HEADER else 4


# =============================================================================
# Record
# =============================================================================

@dataclass(frozen=True)
class Record:
    """
    A single S-record.

    Attributes:
        record_type: S0, S3 or S7.
        address: Load address (S3), start address (S7) or 0 (S0).
        data: Payload bytes; the module name for S0, empty for S7.
    """
    record_type: RecordType
    address: int = 0
    data: bytes = b""

    def __post_init__(self):
        if self.record_type == RecordType.DATA and len(self.data) > MAX_DATA_BYTES:
            raise ValueError(
                f"Data record holds at most {MAX_DATA_BYTES} bytes, "
                f"got {len(self.data)}"
            )
        if self.record_type == RecordType.TERMINATION and self.data:
            raise ValueError("Termination record cannot carry data")
        if not 0 <= self.address < (1 << (8 * self.record_type.address_size)):
            raise ValueError(
                f"Address 0x{self.address:X} does not fit an "
                f"S{int(self.record_type)} record"
            )

    @property
    def address_bytes(self) -> bytes:
        """Big-endian address field."""
        return self.address.to_bytes(self.record_type.address_size, "big")

    @property
    def byte_count(self) -> int:
        """Count field: address + data + checksum bytes."""
        return self.record_type.address_size + len(self.data) + 1

    @property
    def checksum(self) -> int:
        """One's complement of the low byte of count + address + data."""
        total = self.byte_count + sum(self.address_bytes) + sum(self.data)
        return (total & 0xFF) ^ 0xFF

    def to_line(self) -> str:
        """Render the record as a line of text, without terminator."""
        return (
            f"{RECORD_START}{int(self.record_type)}"
            f"{self.byte_count:02X}"
            f"{self.address_bytes.hex().upper()}"
            f"{self.data.hex().upper()}"
            f"{self.checksum:02X}"
        )

    def to_bytes(self) -> bytes:
        """Render the record as ASCII bytes including the line terminator."""
        return (self.to_line() + RECORD_TERMINATOR).encode("ascii")

    @classmethod
    def from_line(cls, line: str) -> "Record":
        """
        Parse one S0, S3 or S7 line.

        Trailing whitespace (line terminators) is ignored.

        Args:
            line: Record text.

        Returns:
            The parsed record.

        Raises:
            RecordFormatError: If the type is unsupported, the count field
                disagrees with the line length, or the checksum is wrong.
        """
        line = line.rstrip()
        if len(line) < 4 or line[0] != RECORD_START:
            raise RecordFormatError(f"Not an S-record: {line!r}")

        try:
            record_type = RecordType(int(line[1]))
        except ValueError:
            raise RecordFormatError(f"Unsupported S-record type: {line[:2]!r}")

        try:
            count = int(line[2:4], 16)
            body = bytes.fromhex(line[4:])
        except ValueError:
            raise RecordFormatError(f"Invalid hex in S-record: {line!r}")

        if len(body) != count:
            raise RecordFormatError(
                f"S-record count {count} does not match length {len(body)}: {line!r}"
            )

        address_size = record_type.address_size
        if count < address_size + 1:
            raise RecordFormatError(f"S-record too short: {line!r}")

        address = int.from_bytes(body[:address_size], "big")
        data = body[address_size:-1]

        try:
            record = cls(record_type, address, data)
        except ValueError as e:
            raise RecordFormatError(str(e))

        if record.checksum != body[-1]:
            raise RecordFormatError(
                f"S-record checksum mismatch: expected 0x{record.checksum:02X}, "
                f"got 0x{body[-1]:02X}"
            )
        return record

    @classmethod
    def header(cls, name: str) -> "Record":
        """Create an S0 header record carrying an ASCII module name."""
        return cls(RecordType.HEADER, 0, name.encode("ascii", errors="replace"))

    @classmethod
    def termination(cls, start_address: int) -> "Record":
        """Create an S7 termination record."""
        return cls(RecordType.TERMINATION, start_address)
