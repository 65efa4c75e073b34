"""
Firmware image storage for the AVR stack analyzer.

Program memory is byte addressable; instructions are 16-bit little-endian
words, so word address N lives at bytes 2N and 2N+1. Images are loaded from
Intel HEX files with the `intelhex` package.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from intelhex import HexReaderError, IntelHex

from analysis_errors import MalformedImageError

logger = logging.getLogger(__name__)

WORD_SIZE = 2      # bytes per instruction word
ERASED_BYTE = 0xFF  # value of unprogrammed flash


class FirmwareMemory:
    """Elastic byte store holding a firmware image."""

    def __init__(self, data: bytes = b''):
        self._data = bytearray(data)

    def size(self) -> int:
        """Return the image size in bytes."""
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def read(self, address: int) -> int:
        """Read one byte."""
        if not 0 <= address < len(self._data):
            raise IndexError(f"byte address {address:#x} outside image of {len(self._data)} bytes")
        return self._data[address]

    def write(self, address: int, value: int) -> None:
        """Write one byte, growing the image when writing past its end."""
        if address < 0:
            raise IndexError(f"negative byte address {address}")
        if address >= len(self._data):
            self._data.extend(b'\x00' * (address + 1 - len(self._data)))
        self._data[address] = value & 0xFF

    def write_bytes(self, address: int, data: bytes) -> None:
        for i, value in enumerate(data):
            self.write(address + i, value)

    def read_word(self, word_address: int) -> int:
        """Read a 16-bit little-endian instruction word."""
        offset = word_address * WORD_SIZE
        if word_address < 0 or offset + 1 >= len(self._data):
            raise MalformedImageError(
                f"instruction word outside image of {len(self._data)} bytes",
                word_address,
            )
        return self._data[offset] | (self._data[offset + 1] << 8)

    def to_bytes(self) -> bytes:
        return bytes(self._data)

    @classmethod
    def from_intelhex(cls, source: Union[str, Path, IntelHex, object]) -> 'FirmwareMemory':
        """Build memory from an Intel HEX path, open file or IntelHex object.

        Gaps between records read as erased flash (0xFF).
        """
        if isinstance(source, IntelHex):
            ih = source
        else:
            if isinstance(source, Path):
                source = str(source)
            try:
                ih = IntelHex(source)
            except HexReaderError as exc:
                raise MalformedImageError(f"cannot read Intel HEX image: {exc}") from exc

        memory = cls()
        if ih.maxaddr() is None:
            logger.debug("Empty Intel HEX image")
            return memory

        ih.padding = ERASED_BYTE
        memory._data = bytearray(ih.tobinarray(start=0, end=ih.maxaddr()))
        logger.debug("Loaded %d bytes in %d segment(s)", len(memory), len(ih.segments()))
        return memory


def load_hex(path: Union[str, Path]) -> FirmwareMemory:
    """Load a firmware image from an Intel HEX file."""
    return FirmwareMemory.from_intelhex(Path(path))
