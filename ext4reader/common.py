#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

from enum import IntEnum, auto
from pathlib import Path
from typing import Protocol, runtime_checkable

from construct import Container, Int8ul, Int16ul, Int32ul, StreamError, Struct
from tqdm import tqdm as _tqdm
from tqdm.std import tqdm as TqdmType


class Ext4Error(Exception):
    """Base class of every error raised while walking an ext4 volume."""


class FormatError(Ext4Error, ValueError):
    """On-disk data is malformed or uses a layout that is not supported."""


class ShortReadError(Ext4Error, OSError):
    """The byte source could not return the requested range."""


class NotFoundError(Ext4Error, FileNotFoundError):
    """A path component does not exist in its parent directory."""


class NotDirectoryError(Ext4Error, NotADirectoryError):
    """Path traversal expected a directory and found something else."""


class IsDirectoryError(Ext4Error, IsADirectoryError):
    """File content was requested from a directory inode."""


class FileTypes(IntEnum):
    UNKNOWN = 0
    REGULAR_FILE = auto()
    DIRECTORY = auto()
    CHARACTER_DEVICE = auto()
    BLOCK_DEVICE = auto()
    FIFO = auto()
    SOCKET = auto()
    SYMBOLIC_LINK = auto()


@runtime_checkable
class ImageLike(Protocol):
    def read(self, offset: int, size: int) -> bytes: ...
    def get_size(self) -> int: ...
    def close(self) -> None: ...


class RAWImgInfo:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._file = path.open("rb")

    def read(self, offset: int, size: int) -> bytes:
        self._file.seek(offset)
        return self._file.read(size)

    def get_size(self) -> int:
        return self._path.stat().st_size

    def close(self) -> None:
        self._file.close()


class MemoryImgInfo:
    def __init__(self, data: bytes | bytearray) -> None:
        self._data = bytes(data)

    def read(self, offset: int, size: int) -> bytes:
        return self._data[offset : offset + size]

    def get_size(self) -> int:
        return len(self._data)

    def close(self) -> None:
        pass


def combine_lohi(lo: int, hi: int, lo_bits: int = 32) -> int:
    """
    Join a value that ext4 stores as two halves at separate offsets.
    The low half keeps its original field; the high half was added later for 64-bit volumes.
    """
    return hi << lo_bits | lo


class ByteReader:
    """
    Little-endian reader over a window of an ImageLike.
    Offsets are relative to the window base. Every call reads the source again.
    """

    def __init__(self, img_info: ImageLike, base: int = 0, size: int | None = None) -> None:
        self.img_info = img_info
        self.base = base
        self.size = size

    def __repr__(self) -> str:
        return f"ByteReader(base=0x{self.base:x}, size={self.size})"

    def read(self, offset: int, length: int) -> bytes:
        if offset < 0 or length < 0:
            msg = f"Invalid read: offset={offset}, length={length}"
            raise ShortReadError(msg)
        if self.size is not None and offset + length > self.size:
            msg = f"Read past window: 0x{self.base + offset:x}+{length} exceeds 0x{self.base:x}+{self.size}"
            raise ShortReadError(msg)
        try:
            data = self.img_info.read(self.base + offset, length)
        except OSError as e:
            msg = f"Failed to read {length} bytes at 0x{self.base + offset:x}: {e}"
            raise ShortReadError(msg) from e
        if len(data) != length:
            msg = f"Short read at 0x{self.base + offset:x}: wanted {length} bytes, got {len(data)}"
            raise ShortReadError(msg)
        return data

    def slice(self, offset: int, size: int | None = None) -> "ByteReader":
        if offset < 0:
            msg = f"Invalid window offset: {offset}"
            raise ShortReadError(msg)
        if self.size is not None:
            remaining = self.size - offset
            size = remaining if size is None else min(size, remaining)
        return ByteReader(self.img_info, self.base + offset, size)

    def parse(self, struct: Struct, offset: int) -> Container:
        data = self.read(offset, struct.sizeof())
        try:
            return struct.parse(data)
        except StreamError as e:
            raise ShortReadError(str(e)) from e

    def u8(self, offset: int) -> int:
        return Int8ul.parse(self.read(offset, 1))

    def u16(self, offset: int) -> int:
        return Int16ul.parse(self.read(offset, 2))

    def u32(self, offset: int) -> int:
        return Int32ul.parse(self.read(offset, 4))

    def u64_lohi(self, lo_offset: int, hi_offset: int) -> int:
        return combine_lohi(self.u32(lo_offset), self.u32(hi_offset))


class VolumeReaderCommon:
    def __init__(self, img_info: ImageLike, offset: int = 0, debug: bool = False, no_progress: bool = True) -> None:
        self.img_info = img_info
        self.offset = offset
        self.debug = debug
        self.no_progress = no_progress
        self.reader = ByteReader(img_info, offset)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def dbg_print(self, msg: str | Container | Ext4Error) -> None:
        if self.debug:
            print(msg)

    def tqdm(self, *args, **kwargs) -> TqdmType:
        if "disable" not in kwargs:
            kwargs["disable"] = self.no_progress
        return _tqdm(*args, **kwargs)

    def close(self) -> None:
        self.img_info.close()
