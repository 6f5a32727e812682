from __future__ import annotations

import pytest

from u8_builders import build_archive


@pytest.fixture
def make_archive():
    return build_archive
