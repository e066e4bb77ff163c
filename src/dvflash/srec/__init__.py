"""
Motorola S-Record Support
=========================

Frames binary images as S0/S3/S7 records for the DM644x UART boot loader,
and recognizes images that are already S-record text.
"""

from dvflash.srec.records import MAX_DATA_BYTES, Record, RecordType
from dvflash.srec.encoder import (
    LOADER_STUB_SIZE,
    decode_passthrough,
    encode,
    is_pre_encoded,
    iter_records,
    module_name_for,
    prepare_payload,
)

__all__ = [
    "MAX_DATA_BYTES",
    "Record",
    "RecordType",
    "LOADER_STUB_SIZE",
    "decode_passthrough",
    "encode",
    "is_pre_encoded",
    "iter_records",
    "module_name_for",
    "prepare_payload",
]
