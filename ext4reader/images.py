#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

from enum import IntEnum, auto
from pathlib import Path

import pyewf
import pytsk3
import pyvhdi
import pyvmdk


class DiskImgTypes(IntEnum):
    UNKNOWN = 0
    RAW = auto()
    EWF = auto()
    VMDK = auto()
    VHDI = auto()
    PARTITION = auto()  # Bare volume dump that libmagic only reports as "data"


class HandleImgInfo(pytsk3.Img_Info):
    """Byte source backed by a libyal handle (pyewf, pyvmdk or pyvhdi)."""

    def __init__(self, handle: pyewf.handle | pyvmdk.handle | pyvhdi.file, img_type: DiskImgTypes) -> None:
        self._handle = handle
        self.img_type = img_type
        super().__init__(url="")

    def read(self, offset: int, size: int) -> bytes:
        self._handle.seek(offset)
        return self._handle.read(size)

    def get_size(self) -> int:
        return self._handle.get_media_size()

    def close(self) -> None:
        self._handle.close()
        super().close()


def _open_ewf(path: Path) -> pyewf.handle:
    handle = pyewf.handle()
    handle.open(pyewf.glob(str(path)))
    return handle


def _open_vmdk(path: Path) -> pyvmdk.handle:
    handle = pyvmdk.handle()
    handle.open(str(path))
    handle.open_extent_data_files()
    return handle


def _open_vhdi(path: Path) -> pyvhdi.file:
    handle = pyvhdi.file()
    handle.open(str(path))
    return handle


CONTAINER_OPENERS = {
    DiskImgTypes.EWF: _open_ewf,
    DiskImgTypes.VMDK: _open_vmdk,
    DiskImgTypes.VHDI: _open_vhdi,
}


def open_container(path: Path, img_type: DiskImgTypes) -> HandleImgInfo:
    return HandleImgInfo(CONTAINER_OPENERS[img_type](path), img_type)
