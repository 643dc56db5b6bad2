# Frame sources for replaying recorded RGB-D sequences

from .frames import Frame, FrameSource, TumRGBDSource

__all__ = [
    "Frame",
    "FrameSource",
    "TumRGBDSource",
]
