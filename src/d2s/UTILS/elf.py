"""
Utilities for recognizing ELF executables and shared libraries by content.
"""
from enum import Enum
from typing import Optional

ELF_MAGIC = b"\x7fELF"
ET_EXEC = 2
ET_DYN = 3


class ElfKind(str, Enum):
    EXECUTABLE = "executable"
    SHARED = "shared"


def classify(path: str) -> Optional[ElfKind]:
    """
    Reads the ELF header of a file.

    Position independent executables report ``ET_DYN`` like shared libraries,
    both are compressible.

    Returns ``None`` for anything that is not an ELF executable or shared object.
    """
    try:
        with open(path, "rb") as f:
            header = f.read(18)
    except OSError:
        return None

    if len(header) < 18 or not header.startswith(ELF_MAGIC):
        return None

    # EI_DATA: 1 little endian, 2 big endian
    byteorder = "big" if header[5] == 2 else "little"
    e_type = int.from_bytes(header[16:18], byteorder)
    if e_type == ET_EXEC:
        return ElfKind.EXECUTABLE
    if e_type == ET_DYN:
        return ElfKind.SHARED
    return None
