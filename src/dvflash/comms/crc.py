"""
Table-Driven CRC-32 Engine
==========================

This module implements the configurable, table-driven 32-bit CRC used by the
DM644x serial boot protocol. The same engine serves two purposes:

1. Computing the integrity checksum of the first-stage loader, which the host
   announces in the ACK header sent to the mask-ROM boot loader.
2. Producing the lookup table itself, which is transmitted to the device so
   the ROM can validate the loader as it arrives.

Model Parameters
----------------
- Polynomial: 32-bit key polynomial (bit 32 is implicit)
- Initial value: register value before the first byte
- Final XOR: value XORed with the register after the last byte
- Reflected: True when input bits arrive LSB first (hardware convention)
- Bytes per shift: 1 or 2 bytes consumed per table lookup (256 or 65536
  table entries)

Standard Instantiations
-----------------------
=============  ==========  ==========  ==========  =========  =====
Name           Polynomial  Init        Final XOR   Reflected  Bytes
=============  ==========  ==========  ==========  =========  =====
CRC-32         0x04C11DB7  0xFFFFFFFF  0xFFFFFFFF  yes        1
Loader CRC     0x04C11DB7  0xFFFFFFFF  0x00000000  yes        1
=============  ==========  ==========  ==========  =========  =====

The loader variant skips the final inversion, so its result is the bitwise
complement of the standard CRC-32.

Usage
-----
    from dvflash.comms.crc import standard_crc32, loader_crc32

    crc = standard_crc32()
    assert crc.checksum(b"123456789") == 0xCBF43926

    loader = loader_crc32()
    header_field = f"{loader.checksum(image):08X}"
    table_text = loader.table_hex()
"""

from typing import Final

# =============================================================================
# CRC-32 Constants
# =============================================================================

# Key polynomial of the IEEE 802.3 CRC-32
CRC32_POLYNOMIAL: Final[int] = 0x04C11DB7

# Register preset and final XOR of the standard CRC-32
CRC32_INITIAL: Final[int] = 0xFFFFFFFF
CRC32_FINAL_XOR: Final[int] = 0xFFFFFFFF

# The boot ROM skips the final inversion
LOADER_FINAL_XOR: Final[int] = 0x00000000

# Mask for 32-bit register values
CRC_MASK: Final[int] = 0xFFFFFFFF

# Allowed number of bytes consumed per table lookup
VALID_BYTES_PER_SHIFT: Final[tuple[int, ...]] = (1, 2)

# CRC-32 of the ASCII string "123456789" (standard check value)
CRC32_CHECK_VALUE: Final[int] = 0xCBF43926


# =============================================================================
# Bit Reflection
# =============================================================================

def reflect(value: int, width: int) -> int:
    """
    Reverse the lowest `width` bits of a value.

    Bits above `width` are discarded.

    Args:
        value: Unsigned input value.
        width: Number of low-order bits to reverse (1-32).

    Returns:
        The reflected value.

    Raises:
        ValueError: If width is outside 1-32.

    Example:
        >>> hex(reflect(0x01, 8))
        '0x80'
        >>> hex(reflect(0x04C11DB7, 32))
        '0xedb88320'
    """
    if not 1 <= width <= 32:
        raise ValueError(f"Reflection width must be 1-32, got {width}")

    result = 0
    for _ in range(width):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def _normalize_bytes_per_shift(bytes_per_shift: int) -> int:
    """Clamp the bytes-per-shift setting to 1 unless it is 1 or 2."""
    return bytes_per_shift if bytes_per_shift in VALID_BYTES_PER_SHIFT else 1


# =============================================================================
# Table Generation
# =============================================================================

def build_table(
    poly: int = CRC32_POLYNOMIAL,
    init: int = CRC32_INITIAL,
    final_xor: int = CRC32_FINAL_XOR,
    reflected: bool = True,
    bytes_per_shift: int = 1,
) -> tuple[int, ...]:
    """
    Generate the CRC lookup table.

    For every possible input symbol (one or two bytes) the symbol is placed
    in the top bits of a 32-bit register and clocked through 8 or 16
    shift-and-XOR steps against the polynomial. In reflected mode the symbol
    is bit-reversed over its width first, and the resulting register is
    bit-reversed over 32 bits.

    `init` and `final_xor` do not influence the table; they are accepted so
    every engine entry point takes the same five model parameters.

    Args:
        poly: Key polynomial (bits 31-0).
        init: Initial register value (unused for generation).
        final_xor: Final XOR value (unused for generation).
        reflected: True for LSB-first models.
        bytes_per_shift: 1 or 2; any other value is treated as 1.

    Returns:
        Tuple of 2^(8*bytes_per_shift) 32-bit table entries.
    """
    bytes_per_shift = _normalize_bytes_per_shift(bytes_per_shift)
    num_bits = bytes_per_shift * 8
    table_len = 1 << num_bits
    top_shift = 32 - num_bits

    table = []
    for symbol in range(table_len):
        if reflected:
            accum = reflect(symbol, num_bits) << top_shift
        else:
            accum = symbol << top_shift

        for _ in range(num_bits):
            if accum & 0x80000000:
                accum = ((accum << 1) ^ poly) & CRC_MASK
            else:
                accum = (accum << 1) & CRC_MASK

        table.append(reflect(accum, 32) if reflected else accum)

    return tuple(table)


# =============================================================================
# Checksum Calculation
# =============================================================================

def checksum(
    table: tuple[int, ...],
    init: int,
    final_xor: int,
    reflected: bool,
    bytes_per_shift: int,
    data: bytes,
) -> int:
    """
    Calculate the CRC of a byte buffer using a prebuilt table.

    Reflected models shift the register right:
        reg = (reg >> n) ^ table[(reg & mask) ^ symbol]

    Non-reflected models shift it left:
        reg = (reg << n) ^ table[((reg >> (32 - n)) & mask) ^ symbol]

    With two bytes per shift the symbol is the next byte pair, taken
    big-endian for non-reflected models and little-endian for reflected
    ones. A trailing odd byte is not processed in that mode.

    Args:
        table: Table produced by build_table() with the same model.
        init: Initial register value.
        final_xor: Value XORed into the result.
        reflected: True for LSB-first models.
        bytes_per_shift: 1 or 2; any other value is treated as 1.
        data: Input bytes.

    Returns:
        32-bit CRC value.

    Example:
        >>> table = build_table()
        >>> hex(checksum(table, 0xFFFFFFFF, 0xFFFFFFFF, True, 1, b"123456789"))
        '0xcbf43926'
    """
    bytes_per_shift = _normalize_bytes_per_shift(bytes_per_shift)
    num_bits = bytes_per_shift * 8
    mask = (1 << num_bits) - 1
    top_shift = 32 - num_bits

    crc = init & CRC_MASK

    if bytes_per_shift == 2:
        pairs = len(data) // 2
        if reflected:
            for i in range(pairs):
                symbol = (data[2 * i + 1] << 8) | data[2 * i]
                crc = (crc >> num_bits) ^ table[(crc & mask) ^ symbol]
        else:
            for i in range(pairs):
                symbol = (data[2 * i] << 8) | data[2 * i + 1]
                index = ((crc >> top_shift) & mask) ^ symbol
                crc = ((crc << num_bits) & CRC_MASK) ^ table[index]
    elif reflected:
        for byte in data:
            crc = (crc >> 8) ^ table[(crc & 0xFF) ^ byte]
    else:
        for byte in data:
            index = ((crc >> top_shift) & 0xFF) ^ byte
            crc = ((crc << 8) & CRC_MASK) ^ table[index]

    return (crc ^ final_xor) & CRC_MASK


# =============================================================================
# Checksum Context
# =============================================================================

class Crc32:
    """
    A CRC-32 model together with its lookup table.

    The table is built once in the constructor and never modified, so a
    single instance can be shared between threads.

    Attributes:
        poly: Key polynomial.
        init: Initial register value.
        final_xor: Final XOR value.
        reflected: True for LSB-first models.
        bytes_per_shift: 1 or 2 (other requested values are clamped to 1).
        table: Immutable lookup table.

    Example:
        crc = Crc32()
        value = crc.checksum(b"Hello")
        first_entry = crc[1]
    """

    def __init__(
        self,
        poly: int = CRC32_POLYNOMIAL,
        init: int = CRC32_INITIAL,
        final_xor: int = CRC32_FINAL_XOR,
        reflected: bool = True,
        bytes_per_shift: int = 1,
    ):
        self.poly = poly & CRC_MASK
        self.init = init & CRC_MASK
        self.final_xor = final_xor & CRC_MASK
        self.reflected = reflected
        self.bytes_per_shift = _normalize_bytes_per_shift(bytes_per_shift)
        self.table = build_table(
            self.poly, self.init, self.final_xor,
            self.reflected, self.bytes_per_shift,
        )

    def __len__(self) -> int:
        return len(self.table)

    def __getitem__(self, index: int) -> int:
        return self.table[index]

    def checksum(self, data: bytes) -> int:
        """Calculate the CRC of `data` with this model."""
        return checksum(
            self.table, self.init, self.final_xor,
            self.reflected, self.bytes_per_shift, data,
        )

    def table_hex(self) -> str:
        """
        Render the table the way the boot ROM expects to receive it.

        Every entry becomes 8 lowercase hex characters, concatenated with no
        separators (2048 characters for a 256-entry table).
        """
        return "".join(f"{entry:08x}" for entry in self.table)

    def __repr__(self) -> str:
        return (
            f"Crc32(poly=0x{self.poly:08X}, init=0x{self.init:08X}, "
            f"final_xor=0x{self.final_xor:08X}, reflected={self.reflected}, "
            f"bytes_per_shift={self.bytes_per_shift})"
        )


def standard_crc32() -> Crc32:
    """Return the canonical CRC-32 model (Ethernet, ZIP)."""
    return Crc32(CRC32_POLYNOMIAL, CRC32_INITIAL, CRC32_FINAL_XOR, True, 1)


def loader_crc32() -> Crc32:
    """
    Return the loader-integrity model used by the boot ROM.

    Identical to CRC-32 except the final register is not inverted, so the
    result is the bitwise complement of the standard value.
    """
    return Crc32(CRC32_POLYNOMIAL, CRC32_INITIAL, LOADER_FINAL_XOR, True, 1)
