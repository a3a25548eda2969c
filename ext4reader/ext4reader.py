#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

import contextlib
from pathlib import Path
from typing import Self

import magic
import pytsk3

from ext4reader.common import ByteReader, Ext4Error, ImageLike, RAWImgInfo
from ext4reader.ext4 import Ext4Volume, Superblock
from ext4reader.images import DiskImgTypes, open_container

MAGIC_PATTERNS = {
    "RAW": r"DOS/MBR boot sector",
    "EWF": r"EWF/Expert Witness/EnCase",
    "VMDK": r"VMware",
    "VHDI": r"Microsoft Disk Image",
    "BLOCK": r"block special",
    "EXT4": r"Linux rev 1.0 ext4 filesystem data",
    "PARTITION": r"data",
}


class UnsupportedImageError(ValueError):
    """Unsupported disk image format."""


class UnsupportedFilesystemError(UnsupportedImageError):
    """Unsupported filesystem (not EXT4)."""


class Ext4Reader:
    """Open a disk image or block device and hand out an Ext4Volume for the ext4 volume in it."""

    img_info: ImageLike
    volume: Ext4Volume

    def __new__(cls, img_file: str | Path, offset: int = 0, debug: bool = False, no_progress: bool = True) -> Self:
        path = Path(img_file).expanduser().resolve()
        if not path.exists():
            msg = f"File does not exist: {img_file}"
            raise FileNotFoundError(msg)
        if not (path.is_file() or path.is_block_device()):
            msg = f"File must be a regular file or block device: {img_file}"
            raise ValueError(msg)

        magic_sig = cls._probe_magic(path)
        img_info, img_type = cls._detect_image(path, magic_sig)
        if img_info is None:
            msg = f"Unsupported disk image format: {path}"
            raise UnsupportedImageError(msg)

        if not cls._detect_fs(img_info, offset):
            with contextlib.suppress(Exception):
                img_info.close()
            msg = f"Unsupported filesystem: {path} (image type: {img_type.name}, offset: {offset})"
            raise UnsupportedFilesystemError(msg)

        self = super().__new__(cls)
        self.img_info = img_info
        try:
            self.volume = Ext4Volume(img_info, offset, debug=debug, no_progress=no_progress)
        except Ext4Error:
            img_info.close()
            raise
        return self

    def __enter__(self) -> Ext4Volume:
        return self.volume

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _probe_magic(path: Path) -> str:
        return magic.from_file(str(path))

    @staticmethod
    def _detect_image(path: Path, magic_sig: str) -> tuple[ImageLike | None, DiskImgTypes]:
        for img_type in (DiskImgTypes.EWF, DiskImgTypes.VMDK, DiskImgTypes.VHDI):
            if magic_sig.startswith(MAGIC_PATTERNS[img_type.name]):
                return open_container(path, img_type), img_type

        if magic_sig.startswith((MAGIC_PATTERNS["RAW"], MAGIC_PATTERNS["BLOCK"], MAGIC_PATTERNS["EXT4"])):
            return pytsk3.Img_Info(str(path)), DiskImgTypes.RAW

        if magic_sig.startswith(MAGIC_PATTERNS["PARTITION"]):
            return RAWImgInfo(path), DiskImgTypes.PARTITION

        return None, DiskImgTypes.UNKNOWN

    @staticmethod
    def _detect_fs(img_info: ImageLike, offset: int) -> bool:
        # Try EXT4 via pytsk3
        if isinstance(img_info, pytsk3.Img_Info):
            try:
                fs_info = pytsk3.FS_Info(img_info, offset)
                if fs_info.info.ftype == pytsk3.TSK_FS_TYPE_EXT4:
                    return True
            except OSError:
                pass
        # Probe the superblock manually
        try:
            _ = Superblock.parse(ByteReader(img_info, offset))
        except Ext4Error:
            return False
        else:
            return True

    def close(self) -> None:
        self.volume.close()
