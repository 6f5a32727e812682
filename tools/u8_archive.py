#!/usr/bin/env python3
"""
Reader, writer and payload rebuilder for U8 archives.

The script can:
1) list the filename table of a U8 archive,
2) repack an archive into canonical form (case-insensitive alphabetical
   node order, 0x20-aligned payloads, shared payload ranges kept shared).

Layout (all integers big-endian):
  header        32 bytes: magic, root node offset, node+string table length,
                payload start, 16 reserved bytes
  node table    12 bytes per node, pre-order:
                  u8  type (0 = file, 1 = folder)
                  u24 name offset into the string table
                  u32 file: absolute payload offset | folder: depth
                  u32 file: size | folder: index one past its last descendant
  string table  NUL-terminated names
  payload       file data, 0x20-aligned
"""

from __future__ import annotations

import argparse
import hashlib
import io
import logging
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Union

log = logging.getLogger(__name__)

U8_MAGIC = 0x55AA382D
ROOT_NODE_OFFSET = 0x20
HEADER_SIZE = 0x20
NODE_SIZE = 12
ALIGNMENT = 0x20
MAX_NAME_OFFSET = 0xFFFFFF

FILE_TYPE = 0
FOLDER_TYPE = 1

HEADER_FORMAT = ">IIII16x"
NODE_FORMAT = ">III"

LISTING_INDENT = 2
LISTING_OFFSET_COLUMN = 60
LISTING_SIZE_COLUMN = 70


class U8FormatError(RuntimeError):
    pass


class BadMagicError(U8FormatError):
    def __init__(self, magic: int) -> None:
        super().__init__(f"file is not a U8 archive (magic: 0x{magic:x})")
        self.magic = magic


class UnexpectedNodeTypeError(U8FormatError):
    def __init__(self, node_type: int) -> None:
        super().__init__(f"unexpected node type: {node_type}")
        self.node_type = node_type


class TruncatedDataError(U8FormatError):
    pass


def name_sort_key(name: str) -> str:
    return name.lower()


@dataclass
class U8File:
    """A file node. `offset` is relative to the start of the payload section."""

    offset: int
    size: int


@dataclass
class U8Folder:
    """
    A folder node: children indexed by name.

    Names are case-preserving but compared case-insensitively, so no two
    children may differ only in case. Iteration through `items()` is always
    case-insensitive alphabetical, which is the order the node table uses.
    """

    children: dict[str, U8Node] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.children)

    def __contains__(self, name: str) -> bool:
        return self._stored_name(name) is not None

    def _stored_name(self, name: str) -> str | None:
        if name in self.children:
            return name
        wanted = name_sort_key(name)
        for stored in self.children:
            if name_sort_key(stored) == wanted:
                return stored
        return None

    def items(self) -> list[tuple[str, U8Node]]:
        return sorted(self.children.items(), key=lambda item: name_sort_key(item[0]))

    def child(self, name: str) -> U8Node | None:
        stored = self._stored_name(name)
        if stored is None:
            return None
        return self.children[stored]

    def get(self, path: str) -> U8Node | None:
        """Follow a slash-separated path; empty components are skipped."""
        current: U8Node = self
        for component in path.split("/"):
            if not component:
                continue
            if not isinstance(current, U8Folder):
                return None
            found = current.child(component)
            if found is None:
                return None
            current = found
        return current

    def remove(self, name: str) -> U8Node | None:
        stored = self._stored_name(name)
        if stored is None:
            return None
        return self.children.pop(stored)

    def insert(self, name: str, node: U8Node) -> None:
        # Replaces an existing child whose name differs only in case.
        self.remove(name)
        self.children[name] = node


U8Node = Union[U8File, U8Folder]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_exact(source: BinaryIO, size: int, what: str = "data") -> bytes:
    data = source.read(size)
    if len(data) < size:
        raise TruncatedDataError(
            f"tried to read {size} bytes of {what}, but could only read {len(data)}"
        )
    return data


def write_zeros_to_align(sink: BinaryIO, alignment: int, relative_to: int = 0) -> None:
    pos = sink.tell()
    if pos < relative_to:
        raise ValueError(
            f"trying to align to 0x{alignment:x} at a position (0x{pos:x}) "
            f"before the relative start (0x{relative_to:x})"
        )
    padding = -(pos - relative_to) % alignment
    if padding:
        sink.write(b"\x00" * padding)


def copy_exact(source: BinaryIO, sink: BinaryIO, size: int) -> None:
    sink.write(read_exact(source, size, "file data"))


def hash_range(source: BinaryIO, offset: int, size: int) -> str:
    source.seek(offset)
    return sha256_hex(read_exact(source, size, "file data for hashing"))


def _read_name(source: BinaryIO, offset: int) -> str:
    source.seek(offset)
    raw = bytearray()
    while True:
        chunk = source.read(32)
        if not chunk:
            raise TruncatedDataError(f"unterminated name at string table offset 0x{offset:x}")
        end = chunk.find(b"\x00")
        if end >= 0:
            raw.extend(chunk[:end])
            return raw.decode("latin-1")
        raw.extend(chunk)


def read_tree(source: BinaryIO) -> tuple[U8Folder, int]:
    """
    Read a U8 filename table.

    Returns the root folder and the absolute offset of the payload section;
    every file offset in the tree is relative to it. The source is left
    positioned at the payload start.
    """
    log.debug("Reading U8 filename table")

    source.seek(0)
    (magic,) = struct.unpack(">I", read_exact(source, 4, "magic"))
    if magic != U8_MAGIC:
        raise BadMagicError(magic)

    root_offset, table_length, payload_start = struct.unpack(
        ">III", read_exact(source, 12, "header")
    )
    if root_offset != ROOT_NODE_OFFSET:
        log.warning("Unusual root node offset: 0x%x", root_offset)
    log.debug(
        "root_offset=0x%x table_length=0x%x payload_start=0x%x",
        root_offset,
        table_length,
        payload_start,
    )

    # The root's end index is the total node count, which locates the strings.
    source.seek(root_offset + 8)
    (node_count,) = struct.unpack(">I", read_exact(source, 4, "root node"))
    string_table_offset = root_offset + NODE_SIZE * node_count
    log.debug("node_count=%d string_table_offset=0x%x", node_count, string_table_offset)

    def read_node(node_index: int) -> tuple[int, str, int, int]:
        source.seek(root_offset + NODE_SIZE * node_index)
        type_and_name, value_a, value_b = struct.unpack(
            NODE_FORMAT, read_exact(source, NODE_SIZE, f"node {node_index}")
        )
        node_type = type_and_name >> 24
        name = _read_name(source, string_table_offset + (type_and_name & MAX_NAME_OFFSET))
        log.debug(
            "Node %d: type=%d name=%r a=0x%x b=0x%x", node_index, node_type, name, value_a, value_b
        )
        return node_type, name, value_a, value_b

    root_type, _, _, _ = read_node(0)
    if root_type == FILE_TYPE:
        raise U8FormatError("root node is not a folder")
    if root_type != FOLDER_TYPE:
        raise UnexpectedNodeTypeError(root_type)

    root = U8Folder()
    # Folders still being filled: (folder, name, index one past its last descendant)
    open_folders: list[tuple[U8Folder, str, int]] = [(root, "", node_count)]
    index = 1
    while open_folders:
        folder, folder_name, end = open_folders[-1]
        if index >= end:
            open_folders.pop()
            continue

        node_index = index
        node_type, name, value_a, value_b = read_node(node_index)
        index += 1

        child: U8Node
        if node_type == FILE_TYPE:
            if value_a < payload_start:
                raise U8FormatError(
                    f"node {node_index} ({name!r}): data offset 0x{value_a:x} "
                    f"is before the payload start 0x{payload_start:x}"
                )
            child = U8File(offset=value_a - payload_start, size=value_b)
        elif node_type == FOLDER_TYPE:
            if not index <= value_b <= end:
                raise U8FormatError(
                    f"node {node_index} ({name!r}): folder end index {value_b} "
                    f"is outside {index}..{end}"
                )
            child = U8Folder()
            open_folders.append((child, name, value_b))
        else:
            raise UnexpectedNodeTypeError(node_type)

        if name in folder:
            log.warning("Duplicate name %r in %r, keeping the later one", name, folder_name)
        folder.insert(name, child)

    source.seek(payload_start)
    log.debug("Done reading U8 filename table (%d nodes)", index)
    return root, payload_start


def write_tree(sink: BinaryIO, root: U8Folder) -> int:
    """
    Write a U8 header, node table and string table at the sink's position.

    Output is deterministic for a given tree. Returns the payload start
    relative to where writing began; the sink is left positioned there.
    """
    log.debug("Writing U8 filename table")

    table = bytearray(struct.pack(HEADER_FORMAT, U8_MAGIC, ROOT_NODE_OFFSET, 0, 0))
    strings = bytearray()
    # (position of value A in `table`, payload-relative offset)
    file_fixups: list[tuple[int, int]] = []
    index = 0

    def visit(node: U8Node, name: str, depth: int) -> None:
        nonlocal index
        index += 1
        slot = len(table)
        name_offset = len(strings)
        if name_offset > MAX_NAME_OFFSET:
            raise U8FormatError(f"string table too large for name {name!r}")
        strings.extend(name.encode("latin-1") + b"\x00")
        table.extend(b"\x00" * NODE_SIZE)

        if isinstance(node, U8File):
            file_fixups.append((slot + 4, node.offset))
            struct.pack_into(
                NODE_FORMAT, table, slot, (FILE_TYPE << 24) | name_offset, 0, node.size
            )
            return

        for child_name, child in node.items():
            visit(child, child_name, depth + 1)
        struct.pack_into(
            NODE_FORMAT, table, slot, (FOLDER_TYPE << 24) | name_offset, max(depth, 0), index
        )

    visit(root, "", -1)

    table.extend(strings)
    table_length = len(table) - ROOT_NODE_OFFSET
    table.extend(b"\x00" * (-len(table) % ALIGNMENT))
    payload_start = len(table)

    for position, relative_offset in file_fixups:
        struct.pack_into(">I", table, position, payload_start + relative_offset)
    struct.pack_into(">II", table, 8, table_length, payload_start)

    sink.write(table)
    log.debug(
        "Wrote %d nodes, table_length=0x%x, payload_start=0x%x", index, table_length, payload_start
    )
    return payload_start


def encoded_table_size(root: U8Folder) -> int:
    """Length of the header+tables for `root`; file offsets never affect it."""
    scratch = io.BytesIO()
    write_tree(scratch, root)
    return len(scratch.getvalue())


def rebuild_payload(
    root: U8Folder, payload_start: int, source: BinaryIO, sink: BinaryIO
) -> None:
    """
    Copy every file's data from `source` into a new payload section at the
    sink's position, updating file offsets in place.

    Files are laid out in node-table order, each aligned to 0x20. Files that
    share an original (offset, size) pair keep sharing one copy.
    """
    base = sink.tell()
    # (old offset, size) -> new offset
    remap: dict[tuple[int, int], int] = {}

    def visit(node: U8Node, name: str) -> None:
        if isinstance(node, U8Folder):
            for child_name, child in node.items():
                visit(child, child_name)
            return

        key = (node.offset, node.size)
        if key in remap:
            log.debug("%r shares data at 0x%x -> 0x%x", name, node.offset, remap[key])
            node.offset = remap[key]
            return

        write_zeros_to_align(sink, ALIGNMENT, base)
        new_offset = sink.tell() - base
        source.seek(payload_start + node.offset)
        copy_exact(source, sink, node.size)
        log.debug("%r moved from 0x%x to 0x%x", name, node.offset, new_offset)
        remap[key] = new_offset
        node.offset = new_offset

    visit(root, "(root)")


def repack_archive(source: BinaryIO, sink: BinaryIO) -> U8Folder:
    """Rewrite an archive in canonical order without changing its contents."""
    root, payload_start = read_tree(source)
    start = sink.tell()
    sink.write(b"\x00" * encoded_table_size(root))
    rebuild_payload(root, payload_start, source, sink)
    sink.seek(start)
    write_tree(sink, root)
    return root


def _right_align(line: str, column: int, text: str) -> str:
    return line + " " * max(column - len(line) - len(text), 0) + text


def format_tree(root: U8Folder) -> str:
    lines = [
        _right_align(
            _right_align("FILENAME", LISTING_OFFSET_COLUMN, "OFFSET"), LISTING_SIZE_COLUMN, "SIZE"
        )
    ]

    def visit(node: U8Node, name: str, indent: int) -> None:
        prefix = " " * indent + name
        if isinstance(node, U8File):
            line = _right_align(prefix, LISTING_OFFSET_COLUMN, f" 0x{node.offset:x}")
            lines.append(_right_align(line, LISTING_SIZE_COLUMN, f" 0x{node.size:x}"))
            return
        lines.append(prefix + "/")
        for child_name, child in node.items():
            visit(child, child_name, indent + LISTING_INDENT)

    visit(root, "", 0)
    return "\n".join(lines)


def configure_logging(verbosity: int) -> None:
    level = {-1: logging.ERROR, 0: logging.WARNING, 1: logging.INFO}.get(
        max(verbosity, -1), logging.DEBUG
    )
    logging.basicConfig(format="%(levelname)s:%(message)s", level=level)


def cmd_list(args: argparse.Namespace) -> int:
    archive_path = Path(args.archive)
    with archive_path.open("rb") as handle:
        root, payload_start = read_tree(handle)
    print(format_tree(root))
    print(f"\nPayload start: 0x{payload_start:x}")
    return 0


def cmd_repack(args: argparse.Namespace) -> int:
    archive_path = Path(args.archive)
    out_file = Path(args.output)
    # Whole archive in memory, so repacking in place is safe.
    source = io.BytesIO(archive_path.read_bytes())
    sink = io.BytesIO()
    repack_archive(source, sink)
    packed = sink.getvalue()
    out_file.parent.mkdir(parents=True, exist_ok=True)
    out_file.write_bytes(packed)
    print(f"U8 repacked: {out_file} ({len(packed)} bytes, sha256={sha256_hex(packed)})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="U8 archive tools: list and canonical repack.")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="More log output (repeatable)."
    )
    parser.add_argument(
        "-q", "--quiet", action="count", default=0, help="Less log output."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="Print the filename table of a U8 archive.")
    list_cmd.add_argument("--archive", required=True, help="Path to U8 file.")
    list_cmd.set_defaults(func=cmd_list)

    repack = sub.add_parser("repack", help="Rewrite a U8 archive in canonical form.")
    repack.add_argument("--archive", required=True, help="Path to U8 file.")
    repack.add_argument("--output", required=True, help="Output file path.")
    repack.set_defaults(func=cmd_repack)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose - args.quiet)
    try:
        return int(args.func(args))
    except (U8FormatError, OSError) as exc:
        print(f"[error] {args.archive}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
