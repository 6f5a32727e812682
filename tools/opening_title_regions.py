"""
Region-dependent filenames used in openingTitle.arc.

Each region of the game stores the same five title-screen resources under
its own filenames: four animations in /arc/anim and one layout in
/arc/blyt. The table below is fixed; nothing here is built at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

ANIM_FOLDER_PATH = "/arc/anim"
BLYT_FOLDER_PATH = "/arc/blyt"


class Region(Enum):
    """Regions, named after the letter in their game codes (SMNP01, SMNE01, ...)."""

    P = "P"  # International
    E = "E"  # North America
    J = "J"  # Japan
    K = "K"  # Korea
    W = "W"  # Taiwan
    C = "C"  # China


# Priority order used when the caller gives none: with conflicts ignored,
# files from regions earlier in this list win.
DEFAULT_ORDER: tuple[Region, ...] = (Region.P, Region.E, Region.J, Region.K, Region.W, Region.C)


class Role(Enum):
    IN_PRESS = "inPress brlan"
    IN_TITLE = "inTitle brlan"
    LOOP_PRESS = "loopPress brlan"
    OUT_PRESS = "outPress brlan"
    LAYOUT = "brlyt"

    @property
    def label(self) -> str:
        return self.value

    @property
    def folder_path(self) -> str:
        return BLYT_FOLDER_PATH if self is Role.LAYOUT else ANIM_FOLDER_PATH


@dataclass(frozen=True)
class RegionFilenames:
    in_press: str
    in_title: str
    loop_press: str
    out_press: str
    layout: str

    def for_role(self, role: Role) -> str:
        return {
            Role.IN_PRESS: self.in_press,
            Role.IN_TITLE: self.in_title,
            Role.LOOP_PRESS: self.loop_press,
            Role.OUT_PRESS: self.out_press,
            Role.LAYOUT: self.layout,
        }[role]


def _region_filenames(tag: str) -> RegionFilenames:
    return RegionFilenames(
        in_press=f"openingTitle_{tag}_inPress.brlan",
        in_title=f"openingTitle_{tag}_inTitle.brlan",
        loop_press=f"openingTitle_{tag}_loopPress.brlan",
        out_press=f"openingTitle_{tag}_outPress.brlan",
        layout=f"openingTitle_{tag}.brlyt",
    )


# Title logo textures are shared or region-neutral, so they are not listed:
# P/E use wiiMario_Title_logo_local_00.tpl, J wiiMario_Title_logo_00.tpl,
# K ..._KOR.tpl, W ..._TW.tpl, C ..._CN.tpl.
ALL_FILENAMES: MappingProxyType[Region, RegionFilenames] = MappingProxyType(
    {
        Region.P: _region_filenames("EU_00"),
        Region.E: _region_filenames("US_00"),
        Region.J: _region_filenames("13"),
        Region.K: _region_filenames("KR_00"),
        Region.W: _region_filenames("TW_00"),
        Region.C: _region_filenames("CN_00"),
    }
)


def filename_for(region: Region, role: Role) -> str:
    return ALL_FILENAMES[region].for_role(role)


class RegionListError(ValueError):
    pass


def parse_region(text: str) -> Region:
    try:
        return Region(text.strip().upper())
    except ValueError:
        raise RegionListError(f"unknown region name {text!r}") from None


def parse_region_list(text: str) -> list[Region]:
    """
    Parse "P,J,C" style lists (case-insensitive), or "all" for every
    region in the default order. Order is preserved; repeats are errors.
    """
    if text.strip().lower() == "all":
        return list(DEFAULT_ORDER)

    regions: list[Region] = []
    for item in text.split(","):
        region = parse_region(item)
        if region in regions:
            raise RegionListError(f"region {item!r} specified more than once")
        regions.append(region)
    return regions
