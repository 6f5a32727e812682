#!/usr/bin/env python3
"""
Create region-free openingTitle.arc files for New Super Mario Bros. Wii,
or convert them from one region to another.

The title screen archive stores five region-specific files (four
animations and a layout) under filenames that differ per region. This
tool gathers them from the requested source regions, checks that copies
agree, and writes them back under the filenames of the target regions.
All other archive contents are kept as they are.

Usage:
  python smallworld.py openingTitle.arc                  # region-free, in place
  python smallworld.py in.arc -o out.arc --to j,k
  python smallworld.py in.arc --from e,j --to w --ignore-conflicts
"""

from __future__ import annotations

import argparse
import io
import logging
import os
import sys
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Sequence

from opening_title_merge import (
    ConflictStrategy,
    ConversionError,
    add_regional_files,
    check_for_conflicts,
    extract_regional_files,
    select_regional_files,
    unique_regions,
)
from opening_title_regions import DEFAULT_ORDER, Region, RegionListError, parse_region_list
from u8_archive import (
    U8Folder,
    U8FormatError,
    configure_logging,
    encoded_table_size,
    format_tree,
    read_tree,
    rebuild_payload,
    write_tree,
)

log = logging.getLogger(__name__)

TOTAL_STEPS = 9


class FileAccessError(RuntimeError):
    pass


def _debug_tree(root: U8Folder) -> None:
    if log.isEnabledFor(logging.DEBUG):
        log.debug("\n%s", format_tree(root))


def convert_opening_title(
    source: BinaryIO,
    sink: BinaryIO,
    from_regions: Sequence[Region] | None,
    to_regions: Iterable[Region],
    *,
    content_strategy: ConflictStrategy = ConflictStrategy.FAIL,
    filename_strategy: ConflictStrategy = ConflictStrategy.FAIL,
) -> None:
    """
    Read openingTitle.arc from `source` and write a copy to `sink` whose
    regional files carry the filenames of `to_regions`.

    `from_regions` is a priority list (default: DEFAULT_ORDER); only files
    of those regions are used, and with content_strategy=OVERWRITE the
    earliest region wins a data conflict. `sink` must be seekable and is
    assumed empty. On error, whatever was written to it is garbage.
    """
    targets = unique_regions(to_regions)
    if not targets:
        raise ValueError("must select at least one output region")
    priority = unique_regions(DEFAULT_ORDER if from_regions is None else from_regions)
    log.info("Converting an openingTitle to regions: %s", ",".join(r.value for r in targets))

    log.info("[1/%d] Reading original filename table...", TOTAL_STEPS)
    root, payload_start = read_tree(source)
    _debug_tree(root)

    log.info("[2/%d] Removing all regional files...", TOTAL_STEPS)
    regional_files = extract_regional_files(root, priority)

    if content_strategy is ConflictStrategy.FAIL:
        log.info("[3/%d] Checking for conflicts...", TOTAL_STEPS)
        check_for_conflicts(regional_files, priority, payload_start, source)
    else:
        log.info("[3/%d] Skipping conflict check", TOTAL_STEPS)

    log.info("[4/%d] Selecting regional files...", TOTAL_STEPS)
    selected = select_regional_files(regional_files, priority)
    _debug_tree(root)

    log.info("[5/%d] Adding new regional filenames...", TOTAL_STEPS)
    add_regional_files(root, selected, targets, filename_strategy)
    _debug_tree(root)

    # File offsets are still stale, but they don't change the table length.
    log.info("[6/%d] Predicting size of new filename table...", TOTAL_STEPS)
    table_size = encoded_table_size(root)
    log.info("...new filename table size will be 0x%x", table_size)

    log.info("[7/%d] Writing nulls to reserve space for the filename table...", TOTAL_STEPS)
    start = sink.tell()
    sink.write(b"\x00" * table_size)

    log.info("[8/%d] Building new payload section and updating offsets...", TOTAL_STEPS)
    rebuild_payload(root, payload_start, source, sink)
    _debug_tree(root)

    log.info("[9/%d] Writing final filename table...", TOTAL_STEPS)
    sink.seek(start)
    write_tree(sink, root)

    log.info("Done switching regions!")


def _may_alias(input_path: Path, output_path: Path) -> bool:
    try:
        return output_path.exists() and os.path.samefile(input_path, output_path)
    except OSError:
        return True


def run_file_conversion(
    input_path: Path,
    output_path: Path,
    conversion: Callable[[BinaryIO, BinaryIO], None],
) -> None:
    """
    Run `conversion(in_file, out_file)` between two paths. When the output
    is the input file itself, output is buffered in memory and written once
    the conversion has finished reading.
    """
    try:
        in_file = input_path.open("rb")
    except OSError as exc:
        raise FileAccessError(f'couldn\'t open input file "{input_path}"') from exc

    with in_file:
        if not _may_alias(input_path, output_path):
            try:
                out_file = output_path.open("wb")
            except OSError as exc:
                raise FileAccessError(f'couldn\'t open output file "{output_path}"') from exc
            with out_file:
                conversion(in_file, out_file)
            return

        buffer = io.BytesIO()
        conversion(in_file, buffer)
        log.debug("Buffered 0x%x bytes of output file data in memory", len(buffer.getvalue()))

    try:
        output_path.write_bytes(buffer.getvalue())
    except OSError as exc:
        raise FileAccessError(f'couldn\'t write output file "{output_path}"') from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create region-free openingTitle.arc files for New Super Mario Bros. Wii, "
        "or convert them from one region to another."
    )
    parser.add_argument("input_file", help="Input filename.")
    parser.add_argument(
        "-o",
        "--output-file",
        help="Output filename (default: overwrite the input file).",
    )
    parser.add_argument(
        "--from",
        dest="from_regions",
        default="all",
        help="Regions to convert from, in order of priority (e.g. 'e,j'). "
        "Files from other regions are ignored; with --ignore-conflicts, "
        "conflicts are resolved in favor of regions listed first. "
        "'all' means P,E,J,K,W,C. Default: all.",
    )
    parser.add_argument(
        "--to",
        dest="to_regions",
        default="all",
        help="Regions to include filenames for in the output; order doesn't matter. "
        "Default: all.",
    )
    parser.add_argument(
        "--ignore-conflicts",
        action="store_true",
        help="Write the output even if two source files have different data "
        "(the first region in --from wins) or a target filename already "
        "exists (it is overwritten).",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="More log output (repeatable)."
    )
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Less log output.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose - args.quiet)

    input_path = Path(args.input_file)
    output_path = Path(args.output_file) if args.output_file else input_path
    log.debug("Input filepath: %s", input_path)
    log.debug("Output filepath: %s", output_path)

    try:
        from_regions = parse_region_list(args.from_regions)
    except RegionListError as exc:
        print(f"[error] couldn't read `--from` region list: {exc}", file=sys.stderr)
        return 2
    try:
        to_regions = parse_region_list(args.to_regions)
    except RegionListError as exc:
        print(f"[error] couldn't read `--to` region list: {exc}", file=sys.stderr)
        return 2

    strategy = ConflictStrategy.OVERWRITE if args.ignore_conflicts else ConflictStrategy.FAIL

    def conversion(in_file: BinaryIO, out_file: BinaryIO) -> None:
        convert_opening_title(
            in_file,
            out_file,
            from_regions,
            to_regions,
            content_strategy=strategy,
            filename_strategy=strategy,
        )

    try:
        run_file_conversion(input_path, output_path, conversion)
    except FileAccessError as exc:
        print(f"[error] {exc}: {exc.__cause__}", file=sys.stderr)
        return 1
    except U8FormatError as exc:
        print(f"[error] failed to perform region conversion: invalid U8 file: {exc}", file=sys.stderr)
        return 1
    except (ConversionError, OSError) as exc:
        print(f"[error] failed to perform region conversion: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
