import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from kintrack.config import TrackerConfig  # noqa: E402
from synthetic import corner_depth, to_millimetres  # noqa: E402

ROWS, COLS, FOCAL = 60, 80, 60.0


@pytest.fixture
def small_config():
    """Small image and volume so a frame runs in well under a second."""
    return TrackerConfig(
        rows=ROWS,
        cols=COLS,
        fx=FOCAL,
        fy=FOCAL,
        volume_size=3.0,
        volume_resolution=96,
        trunc_dist=0.15,
    )


@pytest.fixture
def corner_frame():
    return to_millimetres(corner_depth(ROWS, COLS, FOCAL, FOCAL))


@pytest.fixture
def corner_frame_at():
    def make(offset):
        return to_millimetres(corner_depth(ROWS, COLS, FOCAL, FOCAL, offset))
    return make


@pytest.fixture
def rng():
    return np.random.default_rng(0)
