# Volumetric Fusion
# =================
#
# TSDF and colour volumes addressed in the window-local frame, the cyclical
# buffer that moves the window through the world, the world model collecting
# what leaves it, and the raycaster producing the surface prediction.

from .tsdf import TsdfVolume, MAX_WEIGHT
from .color import ColorVolume
from .world_model import WorldModel
from .cyclical import CyclicalBuffer
from .raycast import raycast, resize_vmap, resize_nmap, render_shaded

__all__ = [
    "TsdfVolume",
    "MAX_WEIGHT",
    "ColorVolume",
    "WorldModel",
    "CyclicalBuffer",
    "raycast",
    "resize_vmap",
    "resize_nmap",
    "render_shaded",
]
