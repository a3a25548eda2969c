#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

import pytest
from construct import Bytes, Int8ul, Int16ul, Int32ul

from ext4reader.common import MemoryImgInfo
from ext4reader.ext4 import Ext4Volume

BLOCK_SIZE = 4096
INODES_PER_GROUP = 8192
INODE_SIZE = 256
INODE_TABLE_BLOCK = 5

S_IFDIR = 0x4000
S_IFREG = 0x8000
S_IFLNK = 0xA000
EXT4_EXTENTS_FL = 0x80000


def put(buf: bytearray, offset: int, fmt, value) -> None:
    data = fmt.build(value)
    buf[offset : offset + len(data)] = data


def extent_tree(extents: list[tuple[int, int]], magic: int = 0xF30A, depth: int = 0, entries: int | None = None) -> bytes:
    """Build an inline i_block: header followed by (start, len) leaf records."""
    i_block = bytearray(60)
    put(i_block, 0x0, Int16ul, magic)
    put(i_block, 0x2, Int16ul, len(extents) if entries is None else entries)
    put(i_block, 0x4, Int16ul, 4)
    put(i_block, 0x6, Int16ul, depth)
    for logical, (start, length) in enumerate(extents):
        record = 12 * (logical + 1)
        put(i_block, record + 0x0, Int32ul, logical)
        put(i_block, record + 0x4, Int16ul, length)
        put(i_block, record + 0x6, Int16ul, start >> 32)
        put(i_block, record + 0x8, Int32ul, start & 0xFFFFFFFF)
    return bytes(i_block)


def dir_block(entries: list[tuple[int, str, int]], block_size: int = BLOCK_SIZE, terminate: bool = False) -> bytes:
    """Pack (inode, name, file_type) records. The last record spans the rest of the block unless `terminate` is set."""
    block = bytearray(block_size)
    idx = 0
    for n, (inode_num, name, file_type) in enumerate(entries):
        raw_name = name.encode("utf-8")
        rec_len = (8 + len(raw_name) + 3) & ~3
        if n == len(entries) - 1 and not terminate:
            rec_len = block_size - idx
        put(block, idx + 0x0, Int32ul, inode_num)
        put(block, idx + 0x4, Int16ul, rec_len)
        put(block, idx + 0x6, Int8ul, len(raw_name))
        put(block, idx + 0x7, Int8ul, file_type)
        put(block, idx + 0x8, Bytes(len(raw_name)), raw_name)
        idx += rec_len
    return bytes(block)


class ImageBuilder:
    def __init__(self, blocks: int = 64, block_size: int = BLOCK_SIZE) -> None:
        self.block_size = block_size
        self.buf = bytearray(blocks * block_size)

    def superblock(
        self,
        log_block_size: int = 2,
        inodes_per_group: int = INODES_PER_GROUP,
        inode_size: int = INODE_SIZE,
        magic: int = 0xEF53,
        blocks_per_group: int = 32768,
    ) -> "ImageBuilder":
        sb = 0x400
        put(self.buf, sb + 0x0, Int32ul, inodes_per_group)
        put(self.buf, sb + 0x4, Int32ul, len(self.buf) // self.block_size)
        put(self.buf, sb + 0x18, Int32ul, log_block_size)
        put(self.buf, sb + 0x20, Int32ul, blocks_per_group)
        put(self.buf, sb + 0x28, Int32ul, inodes_per_group)
        put(self.buf, sb + 0x38, Int16ul, magic)
        put(self.buf, sb + 0x4C, Int32ul, 1)
        put(self.buf, sb + 0x58, Int16ul, inode_size)
        put(self.buf, sb + 0x78, Bytes(16), b"testvol".ljust(16, b"\x00"))
        return self

    def group_descriptor(self, group: int, inode_table: int, inode_table_hi: int = 0) -> "ImageBuilder":
        desc = self.block_size + group * 64
        put(self.buf, desc + 0x8, Int32ul, inode_table)
        put(self.buf, desc + 0x28, Int32ul, inode_table_hi)
        return self

    def inode(
        self,
        inode_num: int,
        mode: int,
        size: int,
        i_block: bytes,
        inode_table: int = INODE_TABLE_BLOCK,
        inode_size: int = INODE_SIZE,
        flags: int = EXT4_EXTENTS_FL,
        size_hi: int = 0,
    ) -> "ImageBuilder":
        record = inode_table * self.block_size + ((inode_num - 1) % INODES_PER_GROUP) * inode_size
        put(self.buf, record + 0x0, Int16ul, mode)
        put(self.buf, record + 0x4, Int32ul, size)
        put(self.buf, record + 0x1A, Int16ul, 1)
        put(self.buf, record + 0x20, Int32ul, flags)
        put(self.buf, record + 0x28, Bytes(60), i_block)
        put(self.buf, record + 0x6C, Int32ul, size_hi)
        return self

    def block(self, block_num: int, data: bytes) -> "ImageBuilder":
        start = block_num * self.block_size
        self.buf[start : start + len(data)] = data
        return self

    def build(self) -> bytes:
        return bytes(self.buf)


HOSTS = b"127.0.0.1 localhost\n"
ROOT_BLOCK = 20
ETC_BLOCK = 21
HOSTS_BLOCK = 24
BIG_BLOCKS = (30, 31)
DEEP_LINK_BLOCK = 32


@pytest.fixture
def image_builder() -> ImageBuilder:
    return ImageBuilder().superblock().group_descriptor(0, INODE_TABLE_BLOCK)


@pytest.fixture
def etc_hosts_image(image_builder: ImageBuilder) -> bytes:
    """
    / (2)
    `-- etc (12)
        |-- hosts (34)        regular file, one block
        |-- big (35)          regular file, two blocks
        |-- hosts.link (36)   fast symlink to "hosts"
        `-- slow.link (37)    symlink stored in a data block
    """
    long_target = "/etc/" + "x" * 70
    big = b"A" * BLOCK_SIZE + b"B" * 100
    return (
        image_builder.inode(2, S_IFDIR | 0o755, BLOCK_SIZE, extent_tree([(ROOT_BLOCK, 1)]))
        .block(ROOT_BLOCK, dir_block([(2, ".", 2), (2, "..", 2), (12, "etc", 2)]))
        .inode(12, S_IFDIR | 0o755, BLOCK_SIZE, extent_tree([(ETC_BLOCK, 1)]))
        .block(
            ETC_BLOCK,
            dir_block(
                [
                    (12, ".", 2),
                    (2, "..", 2),
                    (34, "hosts", 1),
                    (35, "big", 1),
                    (36, "hosts.link", 7),
                    (37, "slow.link", 7),
                ],
            ),
        )
        .inode(34, S_IFREG | 0o644, len(HOSTS), extent_tree([(HOSTS_BLOCK, 1)]))
        .block(HOSTS_BLOCK, HOSTS)
        .inode(35, S_IFREG | 0o644, len(big), extent_tree([(BIG_BLOCKS[0], 1), (BIG_BLOCKS[1], 1)]))
        .block(BIG_BLOCKS[0], big[:BLOCK_SIZE])
        .block(BIG_BLOCKS[1], big[BLOCK_SIZE:])
        .inode(36, S_IFLNK | 0o777, 5, b"hosts".ljust(60, b"\x00"), flags=0)
        .inode(37, S_IFLNK | 0o777, len(long_target), extent_tree([(DEEP_LINK_BLOCK, 1)]))
        .block(DEEP_LINK_BLOCK, long_target.encode())
        .build()
    )


@pytest.fixture
def volume(etc_hosts_image: bytes) -> Ext4Volume:
    return Ext4Volume(MemoryImgInfo(etc_hosts_image))
