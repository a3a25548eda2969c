#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

# References:
# https://www.kernel.org/doc/html/latest/filesystems/ext4/overview.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/dynamic.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/ifork.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/directory.html
# https://righteousit.com/wp-content/uploads/2024/04/understanding-ext4-part-1-extents.pdf
# https://righteousit.com/wp-content/uploads/2024/04/understanding-ext4-part-6-directories.pdf

from dataclasses import dataclass, field
from enum import Enum

from construct import ConstError, StreamError

from ext4reader.common import (
    ByteReader,
    FileTypes,
    FormatError,
    ImageLike,
    IsDirectoryError,
    NotDirectoryError,
    NotFoundError,
    VolumeReaderCommon,
    combine_lohi,
)
from ext4reader.structs import ext4_structs
from ext4reader.structs.ext4_structs import (
    ext4_dir_entry_2_header,
    ext4_extent,
    ext4_extent_header,
    ext4_group_desc,
    ext4_inode,
    ext4_inode_extra,
    ext4_superblock_s,
)


def _to_dict(obj: object, skip: tuple[str, ...] = ()) -> dict:
    result = {}
    for name in obj.__dataclass_fields__:
        if name in skip:
            continue
        value = getattr(obj, name)
        if isinstance(value, Enum):
            result[name] = value.name
        elif isinstance(value, bytes):
            result[name] = value.hex()
        else:
            result[name] = value
    return result


@dataclass(frozen=True)
class Superblock:
    magic: int
    block_size: int
    blocks_per_group: int
    inodes_per_group: int
    inode_size: int
    inodes_count: int = 0
    blocks_count: int = 0
    first_data_block: int = 0
    rev_level: int = 0
    feature_compat: int = 0
    feature_incompat: int = 0
    feature_ro_compat: int = 0
    uuid: str = ""
    volume_name: str = ""

    @classmethod
    def parse(cls, reader: ByteReader) -> "Superblock":
        sb_reader = reader.slice(ext4_structs.EXT4_SUPERBLOCK_OFFSET)
        sb = sb_reader.parse(ext4_superblock_s, 0)
        if sb.s_magic != ext4_structs.EXT4_SUPER_MAGIC:
            msg = f"Bad magic number in EXT4 superblock: 0x{sb.s_magic:x}"
            raise FormatError(msg)
        # ext4 caps the block size at 64KiB
        if sb.s_log_block_size > 6:
            msg = f"Unsupported s_log_block_size: {sb.s_log_block_size}"
            raise FormatError(msg)
        block_size = 2 ** (ext4_structs.EXT4_MIN_BLOCK_LOG_SIZE + sb.s_log_block_size)
        if block_size == 1024:
            msg = "1024-byte blocks are not supported"
            raise FormatError(msg)
        if sb.s_inodes_per_group == 0:
            msg = "s_inodes_per_group is zero"
            raise FormatError(msg)
        if sb.s_inode_size < ext4_structs.EXT4_GOOD_OLD_INODE_SIZE:
            msg = f"Unsupported inode size: {sb.s_inode_size}"
            raise FormatError(msg)

        if sb.s_feature_incompat & ext4_structs.EXT4_FEATURE_INCOMPAT_64BIT:
            blocks_count = sb_reader.u64_lohi(ext4_structs.EXT4_SB_BLOCKS_COUNT_LO, ext4_structs.EXT4_SB_BLOCKS_COUNT_HI)
        else:
            blocks_count = sb.s_blocks_count_lo

        return cls(
            magic=sb.s_magic,
            block_size=block_size,
            blocks_per_group=sb.s_blocks_per_group,
            inodes_per_group=sb.s_inodes_per_group,
            inode_size=sb.s_inode_size,
            inodes_count=sb.s_inodes_count,
            blocks_count=blocks_count,
            first_data_block=sb.s_first_data_block,
            rev_level=sb.s_rev_level,
            feature_compat=sb.s_feature_compat,
            feature_incompat=sb.s_feature_incompat,
            feature_ro_compat=sb.s_feature_ro_compat,
            uuid=sb.s_uuid.hex(),
            volume_name=sb.s_volume_name.rstrip(b"\x00").decode("utf-8", errors="replace"),
        )

    @staticmethod
    def _check_inode_number(inode_num: int) -> None:
        if inode_num < 1:
            msg = f"Invalid inode number: {inode_num}"
            raise FormatError(msg)

    def block_group_number(self, inode_num: int) -> int:
        self._check_inode_number(inode_num)
        return (inode_num - 1) // self.inodes_per_group

    def inode_index(self, inode_num: int) -> int:
        self._check_inode_number(inode_num)
        return (inode_num - 1) % self.inodes_per_group

    def group_descriptor_offset(self, group: int) -> int:
        # With 1024-byte blocks the superblock fills block 1 and the table moves to block 2.
        if self.block_size == 1024:
            msg = "1024-byte blocks are not supported"
            raise FormatError(msg)
        return self.block_size + group * ext4_structs.EXT4_DESC_SIZE

    def to_dict(self) -> dict:
        return _to_dict(self)


@dataclass(frozen=True)
class BlockGroupDescriptor:
    inode_table: int
    block_bitmap: int = 0
    inode_bitmap: int = 0
    flags: int = 0

    @classmethod
    def parse(cls, reader: ByteReader, offset: int) -> "BlockGroupDescriptor":
        bg_desc = reader.parse(ext4_group_desc, offset)
        return cls(
            inode_table=combine_lohi(bg_desc.bg_inode_table_lo, bg_desc.bg_inode_table_hi),
            block_bitmap=combine_lohi(bg_desc.bg_block_bitmap_lo, bg_desc.bg_block_bitmap_hi),
            inode_bitmap=combine_lohi(bg_desc.bg_inode_bitmap_lo, bg_desc.bg_inode_bitmap_hi),
            flags=bg_desc.bg_flags,
        )


@dataclass(frozen=True)
class ExtentHeader:
    entries: int
    max: int
    depth: int

    @classmethod
    def parse(cls, i_block: bytes) -> "ExtentHeader":
        try:
            header = ext4_extent_header.parse(i_block[: ext4_structs.EXT4_EXT_NODE_SIZE])
        except ConstError as e:
            msg = "Inode is not extent mapped (indirect block maps are not supported)"
            raise FormatError(msg) from e
        except StreamError as e:
            msg = f"Truncated extent header: {len(i_block)} bytes"
            raise FormatError(msg) from e
        if header.eh_depth != 0:
            msg = f"Extent index nodes are not supported: depth={header.eh_depth}"
            raise FormatError(msg)
        return cls(entries=header.eh_entries, max=header.eh_max, depth=header.eh_depth)


@dataclass(frozen=True)
class Extent:
    block: int  # First logical block covered by this extent
    len: int
    start: int  # Physical block number

    @classmethod
    def parse(cls, i_block: bytes, index: int) -> "Extent":
        header = ExtentHeader.parse(i_block)
        if not 0 <= index < header.entries:
            msg = f"Logical block {index} is out of range (entries={header.entries})"
            raise IndexError(msg)
        offset = ext4_structs.EXT4_EXT_NODE_SIZE * (index + 1)
        if offset + ext4_structs.EXT4_EXT_NODE_SIZE > len(i_block):
            msg = f"Extent {index} does not fit in the inline extent area"
            raise FormatError(msg)
        extent = ext4_extent.parse(i_block[offset : offset + ext4_structs.EXT4_EXT_NODE_SIZE])
        if extent.ee_len != 1:
            msg = f"Multi-block extents are not supported: ee_len={extent.ee_len}"
            raise FormatError(msg)
        return cls(
            block=extent.ee_block,
            len=extent.ee_len,
            start=combine_lohi(extent.ee_start_lo, extent.ee_start_hi),
        )

    def byte_range(self, block_size: int) -> tuple[int, int]:
        return self.start * block_size, (self.start + self.len) * block_size


def resolve_extent(i_block: bytes, index: int, block_size: int) -> tuple[int, int]:
    """Map logical block `index` of an inode to its [start, end) byte range on the volume."""
    return Extent.parse(i_block, index).byte_range(block_size)


@dataclass
class Inode:
    inode: int
    mode: int
    file_type: FileTypes
    size: int
    block: bytes = field(repr=False)
    uid: int = 0
    gid: int = 0
    link_count: int = 0
    flags: int = 0
    atime: int = 0
    atime_nanoseconds: int = 0
    ctime: int = 0
    ctime_nanoseconds: int = 0
    mtime: int = 0
    mtime_nanoseconds: int = 0
    crtime: int = 0
    crtime_nanoseconds: int = 0

    @staticmethod
    def _calc_extra_time(time: int, extra_time: int) -> tuple[int, int]:
        extra_bits = extra_time & 0x3
        time = extra_bits * 2**32 + time
        nano_seconds = extra_time >> 2
        return time, nano_seconds

    @classmethod
    def parse(cls, inode_num: int, reader: ByteReader) -> "Inode":
        """
        Decode one inode record. `reader` must be a window over exactly s_inode_size bytes.
        """
        inode = reader.parse(ext4_inode, 0)
        file_type = ext4_structs.FILETYPE_MAP.get(inode.i_mode & ext4_structs.S_IFMT)
        if file_type is None:
            msg = f"Unknown file type in inode {inode_num}: mode=0x{inode.i_mode:04x}"
            raise FormatError(msg)

        entry = cls(
            inode=inode_num,
            mode=inode.i_mode,
            file_type=file_type,
            size=combine_lohi(inode.i_size_lo, inode.i_size_high),
            block=inode.i_block,
            uid=combine_lohi(inode.i_uid, inode.i_osd2.l_i_uid_high, lo_bits=16),
            gid=combine_lohi(inode.i_gid, inode.i_osd2.l_i_gid_high, lo_bits=16),
            link_count=inode.i_links_count,
            flags=inode.i_flags,
            atime=inode.i_atime,
            ctime=inode.i_ctime,
            mtime=inode.i_mtime,
        )

        if reader.size is not None and reader.size >= ext4_structs.EXT4_GOOD_OLD_INODE_SIZE + ext4_inode_extra.sizeof():
            extra = reader.parse(ext4_inode_extra, ext4_structs.EXT4_GOOD_OLD_INODE_SIZE)
            if extra.i_extra_isize >= ext4_structs.EXT4_INODE_EXTRA_TIME_ISIZE:
                entry.atime, entry.atime_nanoseconds = cls._calc_extra_time(inode.i_atime, extra.i_atime_extra)
                entry.ctime, entry.ctime_nanoseconds = cls._calc_extra_time(inode.i_ctime, extra.i_ctime_extra)
                entry.mtime, entry.mtime_nanoseconds = cls._calc_extra_time(inode.i_mtime, extra.i_mtime_extra)
                entry.crtime, entry.crtime_nanoseconds = cls._calc_extra_time(extra.i_crtime, extra.i_crtime_extra)
        return entry

    @property
    def is_dir(self) -> bool:
        return self.file_type == FileTypes.DIRECTORY

    def is_extent_mapped(self) -> bool:
        try:
            ext4_extent_header.parse(self.block[: ext4_structs.EXT4_EXT_NODE_SIZE])
        except ConstError:
            return False
        return True

    def extent_header(self) -> ExtentHeader:
        if self.flags & ext4_structs.EXT4_INLINE_DATA_FL:
            msg = f"Inode {self.inode} stores its data inline (inline data is not supported)"
            raise FormatError(msg)
        return ExtentHeader.parse(self.block)

    def data_count(self) -> int:
        return self.extent_header().entries

    def extent(self, index: int) -> Extent:
        return Extent.parse(self.block, index)

    def data_range(self, block_size: int, index: int) -> tuple[int, int]:
        return resolve_extent(self.block, index, block_size)

    def to_dict(self) -> dict:
        result = _to_dict(self, skip=("block",))
        result["mode"] = self.mode & 0o7777  # Remove file type bits
        return result


@dataclass(frozen=True)
class DirectoryEntry:
    inode: int
    rec_len: int
    name: str
    file_type: FileTypes = FileTypes.UNKNOWN

    def to_dict(self) -> dict:
        return _to_dict(self)


def parse_directory_block(reader: ByteReader, block_size: int) -> list[DirectoryEntry]:
    """
    Collect the linear directory entries of one data block.
    The scan stops at the end of the block or at the first entry whose inode is 0.
    """
    dir_entries: list[DirectoryEntry] = []
    idx = 0
    while idx < block_size:
        dir_entry = reader.parse(ext4_dir_entry_2_header, idx)
        if dir_entry.inode == 0:
            break
        if dir_entry.rec_len == 0:  # rec_len must not be zero
            msg = f"Directory entry at offset {idx} has rec_len 0"
            raise FormatError(msg)
        name = reader.read(idx + ext4_structs.EXT4_DIR_ENTRY_HEADER_SIZE, dir_entry.name_len)
        dir_entries.append(
            DirectoryEntry(
                inode=dir_entry.inode,
                rec_len=dir_entry.rec_len,
                name=name.decode("utf-8", errors="replace"),
                file_type=ext4_structs.DIRENT_FILETYPE_MAP.get(dir_entry.file_type, FileTypes.UNKNOWN),
            ),
        )
        idx += dir_entry.rec_len
    return dir_entries


class Ext4Volume(VolumeReaderCommon):
    """
    Read-only view of an ext4 volume that starts `offset` bytes into `img_info`.

    Only the superblock is kept. Descriptors, inodes and directory blocks are read
    from the image again on every call.
    """

    def __init__(self, img_info: ImageLike, offset: int = 0, debug: bool = False, no_progress: bool = True) -> None:
        super().__init__(img_info, offset, debug, no_progress)
        self.superblock = Superblock.parse(self.reader)
        self.dbg_print(f"EXT4 superblock: {self.superblock}")
        self.block_size = self.superblock.block_size

    def group_descriptor(self, group: int) -> BlockGroupDescriptor:
        bg_desc = BlockGroupDescriptor.parse(self.reader, self.superblock.group_descriptor_offset(group))
        self.dbg_print(f"Block group descriptor {group}: {bg_desc}")
        return bg_desc

    def inode_offset(self, inode_num: int) -> int:
        sb = self.superblock
        bg_desc = self.group_descriptor(sb.block_group_number(inode_num))
        return bg_desc.inode_table * self.block_size + sb.inode_index(inode_num) * sb.inode_size

    def read_inode(self, inode_num: int) -> Inode:
        offset = self.inode_offset(inode_num)
        inode = Inode.parse(inode_num, self.reader.slice(offset, self.superblock.inode_size))
        self.dbg_print(f"Inode {inode_num} at 0x{offset:x}: {inode}")
        return inode

    def data_block(self, inode: Inode, index: int) -> ByteReader:
        start, end = inode.data_range(self.block_size, index)
        return self.reader.slice(start, end - start)

    def read_block(self, inode: Inode, index: int) -> bytes:
        return self.data_block(inode, index).read(0, self.block_size)

    def read_file(self, inode: Inode) -> bytes:
        if inode.is_dir:
            msg = f"Inode {inode.inode} is a directory"
            raise IsDirectoryError(msg)
        blocks = [
            self.read_block(inode, index)
            for index in self.tqdm(range(inode.data_count()), desc=f"Reading inode {inode.inode}", unit="block", leave=False)
        ]
        data = b"".join(blocks)
        if len(data) < inode.size:
            msg = f"Inode {inode.inode} has {len(data)} bytes of extent data for size {inode.size} (holes are not supported)"
            raise FormatError(msg)
        return data[: inode.size]

    def dir_entries(self, inode: Inode) -> list[DirectoryEntry]:
        if not inode.is_dir:
            msg = f"Inode {inode.inode} is not a directory"
            raise NotDirectoryError(msg)
        dir_entries: list[DirectoryEntry] = []
        for index in range(inode.data_count()):
            block_entries = parse_directory_block(self.data_block(inode, index), self.block_size)
            for dir_entry in block_entries:
                self.dbg_print(f"Directory entry: {dir_entry}")
            dir_entries.extend(block_entries)
        return dir_entries

    def child(self, inode: Inode, name: str) -> int | None:
        for dir_entry in self.dir_entries(inode):
            if dir_entry.name == name:
                return dir_entry.inode
        return None

    def lookup(self, path: str) -> int:
        inode_num = ext4_structs.EXT4_ROOT_INO
        walked = ""
        for name in (part for part in path.split("/") if part):
            inode = self.read_inode(inode_num)
            if not inode.is_dir:
                msg = f"Not a directory: {walked or '/'}"
                raise NotDirectoryError(msg)
            walked += f"/{name}"
            child = self.child(inode, name)
            if child is None:
                msg = f"No such file or directory: {walked}"
                raise NotFoundError(msg)
            inode_num = child
        return inode_num

    def stat(self, path: str) -> Inode:
        return self.read_inode(self.lookup(path))

    def listdir(self, path: str) -> list[DirectoryEntry]:
        return self.dir_entries(self.stat(path))

    def read_path(self, path: str) -> bytes:
        return self.read_file(self.stat(path))

    def readlink(self, inode: Inode) -> str:
        if inode.file_type != FileTypes.SYMBOLIC_LINK:
            msg = f"Inode {inode.inode} is not a symbolic link"
            raise FormatError(msg)
        # Targets shorter than i_block are stored inline instead of in a data block.
        if inode.size < ext4_structs.EXT4_N_BLOCKS_SIZE and not inode.is_extent_mapped():
            target = inode.block[: inode.size]
        else:
            target = self.read_file(inode)
        return target.decode("utf-8", errors="replace")
