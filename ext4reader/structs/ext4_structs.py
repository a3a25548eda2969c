#
# Copyright 2025 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
#    This file is part of Ext4 Path Walker (E4PW).
#    Usage or distribution of this code is subject to the terms of the Apache License, Version 2.0.
#

# References:
# https://www.kernel.org/doc/html/latest/filesystems/ext4/globals.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/group_descr.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/inodes.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/ifork.html
# https://www.kernel.org/doc/html/latest/filesystems/ext4/directory.html
# https://github.com/torvalds/linux/blob/master/fs/ext4/ext4.h
# https://github.com/torvalds/linux/blob/master/fs/ext4/ext4_extents.h


from construct import (
    Bytes,
    Const,
    Int8ul,
    Int16ul,
    Int32ul,
    Padding,
    Struct,
)

from ext4reader.common import FileTypes

# The superblock always starts 1024 bytes into the volume, whatever the block size is.
EXT4_SUPERBLOCK_OFFSET = 0x400
EXT4_SUPER_MAGIC = 0xEF53
EXT4_MIN_BLOCK_LOG_SIZE = 10
EXT4_ROOT_INO = 2  # Root directory

# Only the leading part of the superblock is needed to address inodes and data blocks.
ext4_superblock_s = Struct(
    "s_inodes_count" / Int32ul,  # 0x0: Total inode count
    "s_blocks_count_lo" / Int32ul,  # 0x4: Total block count
    "s_r_blocks_count_lo" / Int32ul,  # 0x8: Blocks reserved for super-user
    "s_free_blocks_count_lo" / Int32ul,  # 0xC: Free block count
    "s_free_inodes_count" / Int32ul,  # 0x10: Free inode count
    "s_first_data_block" / Int32ul,  # 0x14: First data block
    "s_log_block_size" / Int32ul,  # 0x18: Block size is 2 ^ (10 + s_log_block_size)
    "s_log_cluster_size" / Int32ul,  # 0x1C: Cluster size
    "s_blocks_per_group" / Int32ul,  # 0x20: Blocks per group
    "s_clusters_per_group" / Int32ul,  # 0x24: Clusters per group
    "s_inodes_per_group" / Int32ul,  # 0x28: Inodes per group
    "s_mtime" / Int32ul,  # 0x2C: Mount time
    "s_wtime" / Int32ul,  # 0x30: Write time
    "s_mnt_count" / Int16ul,  # 0x34: Number of mounts since last fsck
    "s_max_mnt_count" / Int16ul,  # 0x36: Max number of mounts before fsck
    "s_magic" / Int16ul,  # 0x38: Magic signature, 0xEF53
    "s_state" / Int16ul,  # 0x3A: File system state
    "s_errors" / Int16ul,  # 0x3C: Behaviour when detecting errors
    "s_minor_rev_level" / Int16ul,  # 0x3E: Minor revision level
    "s_lastcheck" / Int32ul,  # 0x40: Time of last check
    "s_checkinterval" / Int32ul,  # 0x44: Maximum time between checks
    "s_creator_os" / Int32ul,  # 0x48: Creator OS
    "s_rev_level" / Int32ul,  # 0x4C: Revision level
    "s_def_resuid" / Int16ul,  # 0x50: Default uid for reserved blocks
    "s_def_resgid" / Int16ul,  # 0x52: Default gid for reserved blocks
    "s_first_ino" / Int32ul,  # 0x54: First non-reserved inode
    "s_inode_size" / Int16ul,  # 0x58: Size of inode structure
    "s_block_group_nr" / Int16ul,  # 0x5A: Block group # of this superblock
    "s_feature_compat" / Int32ul,  # 0x5C: Compatible feature set
    "s_feature_incompat" / Int32ul,  # 0x60: Incompatible feature set
    "s_feature_ro_compat" / Int32ul,  # 0x64: Readonly-compatible feature set
    "s_uuid" / Bytes(16),  # 0x68: 128-bit UUID for volume
    "s_volume_name" / Bytes(16),  # 0x78: Volume label
)

# s_blocks_count_hi lives far past the fields above.
EXT4_SB_BLOCKS_COUNT_LO = 0x4
EXT4_SB_BLOCKS_COUNT_HI = 0x150

# Superblock incompatible features
EXT4_FEATURE_INCOMPAT_64BIT = 0x0080  # Enable a filesystem size of 2^64 blocks

# EXT4 group descriptor structure
# The table starts in the block right after the superblock's block and every record is 64 bytes.
EXT4_DESC_SIZE = 64
ext4_group_desc = Struct(
    "bg_block_bitmap_lo" / Int32ul,  # 0x0: Lower 32-bits of location of block bitmap
    "bg_inode_bitmap_lo" / Int32ul,  # 0x4: Lower 32-bits of location of inode bitmap
    "bg_inode_table_lo" / Int32ul,  # 0x8: Lower 32-bits of location of inode table
    "bg_free_blocks_count_lo" / Int16ul,  # 0xC: Lower 16-bits of free block count
    "bg_free_inodes_count_lo" / Int16ul,  # 0xE: Lower 16-bits of free inode count
    "bg_used_dirs_count_lo" / Int16ul,  # 0x10: Lower 16-bits of directory count
    "bg_flags" / Int16ul,  # 0x12: Block group flags
    "bg_misc_lo" / Padding(10),  # 0x14: Exclude bitmap, bitmap checksums, unused count
    "bg_checksum" / Int16ul,  # 0x1E: Group descriptor checksum
    "bg_block_bitmap_hi" / Int32ul,  # 0x20: Upper 32-bits of location of block bitmap
    "bg_inode_bitmap_hi" / Int32ul,  # 0x24: Upper 32-bits of location of inodes bitmap
    "bg_inode_table_hi" / Int32ul,  # 0x28: Upper 32-bits of location of inodes table
    "bg_misc_hi" / Padding(20),  # 0x2C: Upper halves of the counters and checksums
)

# The first 128 bytes of every inode record (EXT4_GOOD_OLD_INODE_SIZE)
EXT4_GOOD_OLD_INODE_SIZE = 128
EXT4_N_BLOCKS_SIZE = 60  # i_block: 15 * 4 bytes

i_osd2_linux = Struct(
    "l_i_blocks_high" / Int16ul,
    "l_i_file_acl_high" / Int16ul,
    "l_i_uid_high" / Int16ul,
    "l_i_gid_high" / Int16ul,
    "l_i_checksum_lo" / Int16ul,
    "l_i_reserved" / Int16ul,
)

ext4_inode = Struct(
    "i_mode" / Int16ul,  # 0x0: File mode
    "i_uid" / Int16ul,  # 0x2: Lower 16-bits of Owner UID
    "i_size_lo" / Int32ul,  # 0x4: Lower 32-bits of size in bytes
    "i_atime" / Int32ul,  # 0x8: Last access time
    "i_ctime" / Int32ul,  # 0xC: Last inode change time
    "i_mtime" / Int32ul,  # 0x10: Last data modification time
    "i_dtime" / Int32ul,  # 0x14: Deletion Time
    "i_gid" / Int16ul,  # 0x18: Lower 16-bits of GID
    "i_links_count" / Int16ul,  # 0x1A: Hard link count
    "i_blocks_lo" / Int32ul,  # 0x1C: Lower 32-bits of block count
    "i_flags" / Int32ul,  # 0x20: Inode flags
    "i_osd1" / Int32ul,  # 0x24: OS dependent 1
    "i_block" / Bytes(EXT4_N_BLOCKS_SIZE),  # 0x28: Block map or extent tree
    "i_generation" / Int32ul,  # 0x64: File version (for NFS)
    "i_file_acl_lo" / Int32ul,  # 0x68: Lower 32-bits of extended attribute block
    "i_size_high" / Int32ul,  # 0x6C: Upper 32-bits of file/directory size
    "i_obso_faddr" / Int32ul,  # 0x70: (Obsolete) fragment address
    "i_osd2" / i_osd2_linux,  # 0x74: OS dependent 2
)

# Fields past EXT4_GOOD_OLD_INODE_SIZE, present when s_inode_size > 128
ext4_inode_extra = Struct(
    "i_extra_isize" / Int16ul,  # 0x80: Size of this inode - 128
    "i_checksum_hi" / Int16ul,  # 0x82: Upper 16-bits of the inode checksum
    "i_ctime_extra" / Int32ul,  # 0x84: Extra change time bits
    "i_mtime_extra" / Int32ul,  # 0x88: Extra modification time bits
    "i_atime_extra" / Int32ul,  # 0x8C: Extra access time bits
    "i_crtime" / Int32ul,  # 0x90: File creation time
    "i_crtime_extra" / Int32ul,  # 0x94: Extra file creation time bits
)

# i_extra_isize has to reach the end of i_crtime_extra for all four timestamps to be valid.
EXT4_INODE_EXTRA_TIME_ISIZE = 0x18

# File types (mutually-exclusive), i_mode & S_IFMT
S_IFMT = 0xF000
S_IFIFO = 0x1000  # FIFO
S_IFCHR = 0x2000  # Character device
S_IFDIR = 0x4000  # Directory
S_IFBLK = 0x6000  # Block device
S_IFREG = 0x8000  # Regular file
S_IFLNK = 0xA000  # Symbolic link
S_IFSOCK = 0xC000  # Socket

FILETYPE_MAP = {
    S_IFIFO: FileTypes.FIFO,
    S_IFCHR: FileTypes.CHARACTER_DEVICE,
    S_IFDIR: FileTypes.DIRECTORY,
    S_IFBLK: FileTypes.BLOCK_DEVICE,
    S_IFREG: FileTypes.REGULAR_FILE,
    S_IFLNK: FileTypes.SYMBOLIC_LINK,
    S_IFSOCK: FileTypes.SOCKET,
}

# i_flags
EXT4_INLINE_DATA_FL = 0x10000000  # Inode has inline data

#
# Extent tree
#
EXT4_EXT_MAGIC = 0xF30A
EXT4_EXT_NODE_SIZE = 12  # Both the header and every entry are 12 bytes

ext4_extent_header = Struct(
    "eh_magic" / Const(EXT4_EXT_MAGIC, Int16ul),  # 0x0: Magic number, 0xF30A
    "eh_entries" / Int16ul,  # 0x2: Number of valid entries following the header
    "eh_max" / Int16ul,  # 0x4: Maximum number of entries that could follow the header
    "eh_depth" / Int16ul,  # 0x6: Depth of this extent node in the extent tree. 0 = leaf
    "eh_generation" / Int32ul,  # 0x8: Generation of the tree
)

ext4_extent = Struct(
    "ee_block" / Int32ul,  # 0x0: First file block number that this extent covers
    "ee_len" / Int16ul,  # 0x4: Number of blocks covered by extent
    "ee_start_hi" / Int16ul,  # 0x6: Upper 16-bits of the block number to which this extent points
    "ee_start_lo" / Int32ul,  # 0x8: Lower 32-bits of the block number to which this extent points
)

#
# Linear (Classic) Directories
#
EXT4_DIR_ENTRY_HEADER_SIZE = 8

ext4_dir_entry_2_header = Struct(
    "inode" / Int32ul,  # 0x0: Inode number. 0 terminates the listing
    "rec_len" / Int16ul,  # 0x4: Length of this directory entry
    "name_len" / Int8ul,  # 0x6: Length of the file name
    "file_type" / Int8ul,  # 0x7: File type code
)

# Directory file types
EXT4_FT_REG_FILE = 0x1  # Regular file
EXT4_FT_DIR = 0x2  # Directory
EXT4_FT_CHRDEV = 0x3  # Character device file
EXT4_FT_BLKDEV = 0x4  # Block device file
EXT4_FT_FIFO = 0x5  # FIFO
EXT4_FT_SOCK = 0x6  # Socket
EXT4_FT_SYMLINK = 0x7  # Symbolic link

DIRENT_FILETYPE_MAP = {
    EXT4_FT_REG_FILE: FileTypes.REGULAR_FILE,
    EXT4_FT_DIR: FileTypes.DIRECTORY,
    EXT4_FT_CHRDEV: FileTypes.CHARACTER_DEVICE,
    EXT4_FT_BLKDEV: FileTypes.BLOCK_DEVICE,
    EXT4_FT_FIFO: FileTypes.FIFO,
    EXT4_FT_SOCK: FileTypes.SOCKET,
    EXT4_FT_SYMLINK: FileTypes.SYMBOLIC_LINK,
}
