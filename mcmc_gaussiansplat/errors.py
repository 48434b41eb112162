"""
Error taxonomy for training.

Configuration errors are raised before training starts, dataset errors
either skip a single entry (DatasetEntryError) or abort when nothing usable
is left, and training errors abort the loop and surface to the driver.
Cancellation is not an error.
"""


class SplatError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(SplatError, ValueError):
    """Invalid paths, missing files or malformed hyperparameters."""


class DatasetError(SplatError):
    """The dataset as a whole cannot be used."""


class DatasetEntryError(DatasetError):
    """A single camera/image entry is corrupt and can be skipped."""

    def __init__(self, index: int, message: str):
        super().__init__(message)
        self.index = index


class CheckpointError(SplatError):
    """A checkpoint or PLY file could not be read or written."""


class TrainingError(SplatError, RuntimeError):
    """Fatal failure inside the training loop."""


class RasterizerError(TrainingError):
    """The rasterizer raised or produced non-finite output."""


class AllSplatsDeadError(TrainingError):
    """Every splat is below the opacity threshold; relocation has no target distribution."""
