"""
S-Record Encoder
================

Frames raw binary images as Motorola S-record text and recognizes input that
is already in that form.

The device-side loader decodes S-records itself, so every application or
second-stage loader image is normally converted before transmission:

    S0 header     module name at address 0000
    S3 data       16 bytes per record, short final record for the remainder
    S7 end        execution start address

Loader images built for the DM644x carry a 256-byte self-copy stub at the
start that is only meaningful when the image runs from flash. Callers that
transmit such an image pass strip_leading=True to drop it.

Usage
-----
    from dvflash.srec.encoder import encode, is_pre_encoded

    text = encode(image, 0x81080000, module_name="app.srec")
    assert is_pre_encoded(text)
"""

import logging
from pathlib import Path
from typing import Final, Iterator, Optional

from dvflash.errors import RecordFormatError
from dvflash.plan import PayloadFormat
from dvflash.srec.records import MAX_DATA_BYTES, Record, RecordType

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Size of the self-copy stub at the start of a DM644x loader image
LOADER_STUB_SIZE: Final[int] = 256

# Longest module name carried by the S0 header record
MAX_MODULE_NAME: Final[int] = 20

# Source name assumed when the image did not come from a named file
PLACEHOLDER_SOURCE_NAME: Final[str] = "ublDaVinci.bin"

# Extension appended to the source stem to form the module name
MODULE_NAME_SUFFIX: Final[str] = ".srec"

# Size of the address space covered by S3 and S7 records
ADDRESS_LIMIT: Final[int] = 1 << 32


# =============================================================================
# Recognition
# =============================================================================

def is_pre_encoded(source: bytes) -> bool:
    """
    Check whether an input buffer is already S-record text.

    Lines are split on LF, CR or CRLF. Every line except the final one must
    begin with 'S'; the first line is always checked, so a binary image with
    no line breaks is not mistaken for S-record text.

    Args:
        source: Raw file contents.

    Returns:
        True if the buffer looks like S-record text, False otherwise
        (including for empty input).
    """
    lines = source.splitlines()
    if not lines:
        return False

    if not lines[0].startswith(b"S"):
        return False

    return all(line[:1] == b"S" for line in lines[:-1])


# =============================================================================
# Encoding
# =============================================================================

def module_name_for(source_name: Optional[str] = None) -> str:
    """
    Derive the S0 module name from a source file name.

    The name is the file stem with a '.srec' suffix, truncated to 20
    characters. Without a source name the placeholder 'ublDaVinci.bin'
    is used.

    Example:
        >>> module_name_for("/images/app.bin")
        'app.srec'
    """
    if not source_name:
        source_name = PLACEHOLDER_SOURCE_NAME
    name = Path(source_name).stem + MODULE_NAME_SUFFIX
    return name[:MAX_MODULE_NAME]


def iter_records(
    image: bytes,
    start_address: int,
    strip_leading: bool = False,
    module_name: Optional[str] = None,
) -> Iterator[Record]:
    """
    Yield the records that frame an image, in transmission order.

    Args:
        image: Raw binary image.
        start_address: Load address of the first byte after stripping, also
            used as the execution address in the S7 record.
        strip_leading: Skip the 256-byte loader stub first.
        module_name: S0 name; truncated to 20 characters. Defaults to the
            name derived from the placeholder source.

    Yields:
        One S0 record, the S3 data records, and one S7 record.

    Raises:
        RecordFormatError: If the image does not fit the 32-bit address
            space starting at start_address.
    """
    if module_name is None:
        module_name = module_name_for(None)

    data = image[LOADER_STUB_SIZE:] if strip_leading else image

    if not 0 <= start_address <= ADDRESS_LIMIT - max(len(data), 1):
        raise RecordFormatError(
            f"{len(data)} bytes at 0x{start_address:X} do not fit "
            "32-bit S-record addresses"
        )

    yield Record.header(module_name[:MAX_MODULE_NAME])

    for offset in range(0, len(data), MAX_DATA_BYTES):
        chunk = data[offset:offset + MAX_DATA_BYTES]
        yield Record(RecordType.DATA, start_address + offset, chunk)

    yield Record.termination(start_address)


def encode(
    image: bytes,
    start_address: int,
    strip_leading: bool = False,
    module_name: Optional[str] = None,
) -> bytes:
    """
    Convert a binary image to S-record text.

    Args:
        image: Raw binary image.
        start_address: Load and execution address.
        strip_leading: Skip the first 256 bytes of the image.
        module_name: Name for the S0 header record.

    Returns:
        ASCII S-record text, each record terminated by LF.

    Example:
        >>> encode(b"\\x00" * 16, 0x100).splitlines()[1]
        b'S3150000010000000000000000000000000000000000E9'
    """
    records = list(iter_records(image, start_address, strip_leading, module_name))
    logger.debug(
        "Encoded %d bytes at 0x%08X as %d S-records",
        len(image) - (LOADER_STUB_SIZE if strip_leading else 0),
        start_address,
        len(records),
    )
    return b"".join(record.to_bytes() for record in records)


def decode_passthrough(source: bytes) -> bytes:
    """Return pre-encoded S-record text unchanged for transmission."""
    return source


# =============================================================================
# Payload Preparation
# =============================================================================

def prepare_payload(
    image: bytes,
    address: int,
    strip_leading: bool = False,
    source_name: Optional[str] = None,
    fmt: PayloadFormat = PayloadFormat.SREC,
) -> bytes:
    """
    Prepare the bytes transmitted after a BEGIN token.

    Input that is already S-record text is sent as-is. Otherwise the image
    is S-record encoded when fmt is SREC, or sent as raw bytes when fmt is
    BINARY. The loader stub is dropped in both of the latter cases when
    strip_leading is set.

    Args:
        image: File contents.
        address: Load and execution address.
        strip_leading: Skip the 256-byte loader stub.
        source_name: File name used to derive the S0 module name.
        fmt: Requested payload format for binary input.

    Returns:
        Payload bytes.
    """
    if is_pre_encoded(image):
        logger.debug("%s is already S-record text", source_name or "image")
        return decode_passthrough(image)

    if fmt == PayloadFormat.SREC:
        return encode(image, address, strip_leading, module_name_for(source_name))

    return image[LOADER_STUB_SIZE:] if strip_leading else image
