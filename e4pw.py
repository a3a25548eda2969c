#!/usr/bin/env python3
#
# e4pw.py
# Ext4 Path Walker (E4PW) resolves paths on an EXT4 volume and reads inodes, directories and files from raw disk images.
#
# Copyright 2024 Minoru Kobayashi <unknownbit@gmail.com> (@unkn0wnbit)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

import argparse
import json
import os
import sys

from ext4reader.common import Ext4Error
from ext4reader.ext4 import Ext4Volume
from ext4reader.ext4reader import Ext4Reader

VERSION = "20250301"


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="Ext4 Path Walker (E4PW)",
        description="Resolve a path on an EXT4 volume and show its inode, directory entries or content.",
    )
    parser.add_argument(
        "-i",
        "--image",
        type=str,
        help="Path to a disk image file or block device.",
    )
    parser.add_argument(
        "-o",
        "--offset",
        type=int,
        default=0,
        help="Byte offset of the EXT4 volume in the image. (Default: 0)",
    )
    parser.add_argument(
        "-p",
        "--path",
        type=str,
        default="/",
        help="Absolute path on the EXT4 volume. (Default: /)",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--list",
        action="store_true",
        default=False,
        help="List the directory entries of the path as JSON lines.",
    )
    action.add_argument(
        "--cat",
        action="store_true",
        default=False,
        help="Write the content of the path to stdout.",
    )
    action.add_argument(
        "--readlink",
        action="store_true",
        default=False,
        help="Print the target of a symbolic link.",
    )
    action.add_argument(
        "--superblock",
        action="store_true",
        default=False,
        help="Show the decoded superblock of the volume as JSON.",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        default=False,
        help="Disable progress bars. (Default: False)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug mode. (Default: False)",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {VERSION}",
    )
    return parser.parse_args(argv)


def run(volume: Ext4Volume, args: argparse.Namespace) -> None:
    if args.superblock:
        print(json.dumps(volume.superblock.to_dict()))
        return

    inode_num = volume.lookup(args.path)
    inode = volume.read_inode(inode_num)
    if args.list:
        for dir_entry in volume.dir_entries(inode):
            print(json.dumps(dir_entry.to_dict()))
    elif args.cat:
        sys.stdout.buffer.write(volume.read_file(inode))
        sys.stdout.buffer.flush()
    elif args.readlink:
        print(volume.readlink(inode))
    else:
        print(json.dumps({"path": args.path, **inode.to_dict()}))


def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)
    if not args.image:
        print("Please specify a disk image file.", file=sys.stderr)
        return 1

    full_path = os.path.abspath(os.path.expanduser(args.image))
    try:
        with Ext4Reader(full_path, args.offset, debug=args.debug, no_progress=args.no_progress) as volume:
            run(volume, args)
    except (Ext4Error, ValueError, OSError) as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
