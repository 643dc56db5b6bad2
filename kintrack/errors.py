"""
Failure signals raised inside the tracking core.

Both are detected as early as possible (per ICP iteration, per pose
candidate). The public ``KinfuTracker.process_frame`` entry point converts
them into boolean results; lower-level components raise them so callers can
decide how to recover.
"""


class TrackingLost(RuntimeError):
    """The ICP normal equations are degenerate (singular, NaN or not positive definite)."""

    def __init__(self, message: str = "ICP tracking lost", level: int = -1, iteration: int = -1):
        super().__init__(message)
        self.level = level
        self.iteration = iteration


class EstimatorInvalid(RuntimeError):
    """The external visual-odometry estimate contains a NaN component."""
