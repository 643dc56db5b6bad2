# Frame preprocessing: bilateral smoothing, depth pyramid, vertex/normal maps

from .pyramid import (
    Pyramid,
    FramePreprocessor,
    bilateral_filter,
    truncate_depth,
    pyr_down,
    create_vmap,
    compute_normals,
)

__all__ = [
    "Pyramid",
    "FramePreprocessor",
    "bilateral_filter",
    "truncate_depth",
    "pyr_down",
    "create_vmap",
    "compute_normals",
]
