"""
Loader and Application Images
=============================

Locates the embedded UBL images and reads application files.

The first-stage loader sent to the boot ROM (and, unless the operator
supplies one, the loader burned to flash) is a prebuilt UBL binary for
the target flash family:

    NAND           ubl_davinci_nand.bin
    NOR / other    ubl_davinci_nor.bin

Images are searched for in, in order:

1. An explicit directory (the CLI's --loader-dir option)
2. The directory named by the DVFLASH_LOADER_DIR environment variable
3. The loaders/ directory shipped inside this package
"""

import logging
import os
from pathlib import Path
from typing import Final, Optional, Union

from dvflash.errors import MissingInputError
from dvflash.plan import FlashType

logger = logging.getLogger(__name__)

# Environment variable naming an additional loader directory
LOADER_DIR_ENV: Final[str] = "DVFLASH_LOADER_DIR"

# Loaders shipped with the package
PACKAGE_LOADER_DIR: Final[Path] = Path(__file__).parent / "loaders"

NAND_LOADER_NAME: Final[str] = "ubl_davinci_nand.bin"
NOR_LOADER_NAME: Final[str] = "ubl_davinci_nor.bin"


def embedded_loader_name(flash_type: FlashType) -> str:
    """Return the embedded loader file name for a flash family."""
    if flash_type == FlashType.NAND:
        return NAND_LOADER_NAME
    return NOR_LOADER_NAME


def loader_search_path(search_dir: Optional[Union[str, Path]] = None) -> list[Path]:
    """Return the directories searched for embedded loaders, in order."""
    dirs = []
    if search_dir:
        dirs.append(Path(search_dir))
    env_dir = os.environ.get(LOADER_DIR_ENV)
    if env_dir:
        dirs.append(Path(env_dir))
    dirs.append(PACKAGE_LOADER_DIR)
    return dirs


def get_embedded_loader(
    flash_type: FlashType,
    search_dir: Optional[Union[str, Path]] = None,
) -> bytes:
    """
    Load the embedded UBL image for a flash family.

    Args:
        flash_type: Target flash family.
        search_dir: Directory searched before the default locations.

    Returns:
        The loader image, including its 256-byte self-copy stub.

    Raises:
        MissingInputError: If the image is not found in any directory.
    """
    name = embedded_loader_name(flash_type)
    dirs = loader_search_path(search_dir)

    for directory in dirs:
        path = directory / name
        if path.is_file():
            data = path.read_bytes()
            logger.debug("Using embedded loader %s (%d bytes)", path, len(data))
            return data

    searched = ", ".join(str(d) for d in dirs)
    raise MissingInputError(
        f"Embedded loader {name} not found (searched: {searched}). "
        f"Use --loader-dir or set {LOADER_DIR_ENV}.",
        path=name,
    )


def read_image_file(path: Union[str, Path]) -> bytes:
    """
    Read an application or loader file.

    Raises:
        MissingInputError: If the file does not exist.
    """
    path = Path(path)
    if not path.is_file():
        raise MissingInputError(f"File not found: {path}", path=str(path))

    data = path.read_bytes()
    logger.debug("Loaded %s (%d bytes)", path.name, len(data))
    return data
