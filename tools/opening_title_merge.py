"""
Merging of region-specific files in an openingTitle.arc filename table.

Four phases, run in order by the converter:
1) extract_regional_files: detach the role files of every source region,
2) check_for_conflicts: make sure all candidates for a role hold the same data,
3) select_regional_files: pick one candidate per role by region priority,
4) add_regional_files: re-insert the selection under each target region's names.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import BinaryIO, Dict, Iterable, Union

from opening_title_regions import (
    ANIM_FOLDER_PATH,
    BLYT_FOLDER_PATH,
    DEFAULT_ORDER,
    Region,
    Role,
    filename_for,
)
from u8_archive import U8File, U8Folder, hash_range

log = logging.getLogger(__name__)


class ConflictStrategy(Enum):
    """What to do when two things that should be merged disagree."""

    FAIL = "fail"
    OVERWRITE = "overwrite"


class ConversionError(RuntimeError):
    pass


class InvalidStructureError(ConversionError):
    pass


class MissingFilesError(ConversionError):
    def __init__(self, role: Role) -> None:
        super().__init__(f"{role.label} not found")
        self.role = role


class FileDataConflictError(ConversionError):
    def __init__(self, first: str, second: str) -> None:
        super().__init__(f"conflicting files: {first!r} and {second!r} are different")
        self.filenames = (first, second)


class FilenameAlreadyExistsError(ConversionError):
    def __init__(self, filename: str) -> None:
        super().__init__(f"{filename!r} already exists")
        self.filename = filename


@dataclass(frozen=True)
class NamedFile:
    filename: str
    node: U8File


RegionalFiles = Dict[Region, Dict[Role, NamedFile]]


@dataclass(frozen=True)
class Unseen:
    pass


@dataclass(frozen=True)
class OneSeen:
    candidate: NamedFile


@dataclass(frozen=True)
class Hashed:
    candidate: NamedFile
    digest: str


# Per-role conflict state: nothing hashed until a second, different node shows up.
HashState = Union[Unseen, OneSeen, Hashed]


def get_folder(root: U8Folder, path: str) -> U8Folder:
    node = root.get(path)
    if node is None:
        raise InvalidStructureError(f"{path} folder not found")
    if not isinstance(node, U8Folder):
        raise InvalidStructureError(f"{path} wasn't a folder")
    return node


def _role_folders(root: U8Folder) -> dict[str, U8Folder]:
    return {
        ANIM_FOLDER_PATH: get_folder(root, ANIM_FOLDER_PATH),
        BLYT_FOLDER_PATH: get_folder(root, BLYT_FOLDER_PATH),
    }


def unique_regions(regions: Iterable[Region]) -> list[Region]:
    out: list[Region] = []
    for region in regions:
        if region not in out:
            out.append(region)
    return out


def extract_regional_files(root: U8Folder, regions: Iterable[Region]) -> RegionalFiles:
    """
    Remove the role files of the given regions from the tree and return
    them keyed by region and role. Missing files are simply left out.
    """
    folders = _role_folders(root)
    found: RegionalFiles = {}
    for region in unique_regions(regions):
        region_files = found.setdefault(region, {})
        for role in Role:
            filename = filename_for(region, role)
            folder = folders[role.folder_path]
            node = folder.child(filename)
            if not isinstance(node, U8File):
                continue
            log.debug("Removing %r", filename)
            folder.remove(filename)
            region_files[role] = NamedFile(filename=filename, node=node)
    return found


def check_candidate(
    state: HashState, candidate: NamedFile, payload_start: int, source: BinaryIO
) -> HashState:
    """
    Compare one more candidate for a role against the first one seen.

    Nodes with the same offset and size are the same data and are never
    hashed. Otherwise both sides are hashed (the first one only once) and
    a mismatch raises FileDataConflictError.
    """
    if isinstance(state, Unseen):
        return OneSeen(candidate)

    first = state.candidate
    if candidate.node == first.node:
        return state

    if isinstance(state, OneSeen):
        log.debug(
            "Calculating hash of %r (0x%x-0x%x)",
            first.filename,
            first.node.offset,
            first.node.offset + first.node.size,
        )
        state = Hashed(
            first, hash_range(source, payload_start + first.node.offset, first.node.size)
        )

    log.debug(
        "Calculating hash of %r (0x%x-0x%x)",
        candidate.filename,
        candidate.node.offset,
        candidate.node.offset + candidate.node.size,
    )
    digest = hash_range(source, payload_start + candidate.node.offset, candidate.node.size)
    if digest != state.digest:
        raise FileDataConflictError(first.filename, candidate.filename)
    return state


def check_for_conflicts(
    regional_files: RegionalFiles,
    from_regions: Iterable[Region],
    payload_start: int,
    source: BinaryIO,
) -> dict[Role, HashState]:
    states: dict[Role, HashState] = {role: Unseen() for role in Role}
    for region in unique_regions(from_regions):
        for role, candidate in regional_files.get(region, {}).items():
            states[role] = check_candidate(states[role], candidate, payload_start, source)
    return states


def select_regional_files(
    regional_files: RegionalFiles, from_regions: Iterable[Region]
) -> dict[Role, NamedFile]:
    """Pick, per role, the candidate of the earliest region in `from_regions`."""
    selected: dict[Role, NamedFile] = {}
    for region in from_regions:
        for role, candidate in regional_files.get(region, {}).items():
            selected.setdefault(role, candidate)

    for role in Role:
        if role not in selected:
            raise MissingFilesError(role)
        log.debug("Using %r for %s", selected[role].filename, role.label)
    return {role: selected[role] for role in Role}


def add_regional_files(
    root: U8Folder,
    selected: dict[Role, NamedFile],
    to_regions: Iterable[Region],
    filename_strategy: ConflictStrategy = ConflictStrategy.FAIL,
) -> None:
    """
    Insert a copy of each selected node under every target region's
    filename. With FAIL, an existing entry of the same name is an error;
    with OVERWRITE it is replaced.
    """
    folders = _role_folders(root)
    targets = set(to_regions)
    for region in (region for region in DEFAULT_ORDER if region in targets):
        log.debug("Adding filenames for %s", region.value)
        for role in Role:
            filename = filename_for(region, role)
            folder = folders[role.folder_path]
            if filename_strategy is ConflictStrategy.FAIL and filename in folder:
                raise FilenameAlreadyExistsError(filename)
            folder.insert(filename, replace(selected[role].node))
