"""
Gaussian Splatting training with MCMC density control on top of gsplat.
"""

from .config import TrainingConfig
from .dataset import Camera, ColmapDataset
from .errors import (
    AllSplatsDeadError,
    CheckpointError,
    ConfigError,
    DatasetEntryError,
    DatasetError,
    RasterizerError,
    SplatError,
    TrainingError,
)
from .model import GaussianModel
from .render_json import render_from_json
from .rendering import GsplatRasterizer, Rasterizer
from .strategy import MCMCStrategy, RefineRecord, Strategy
from .trainer import Trainer, TrainingResult

__version__ = "0.1.0"

__all__ = [
    "TrainingConfig",
    "Camera",
    "ColmapDataset",
    "GaussianModel",
    "Rasterizer",
    "GsplatRasterizer",
    "render_from_json",
    "Strategy",
    "MCMCStrategy",
    "RefineRecord",
    "Trainer",
    "TrainingResult",
    "SplatError",
    "ConfigError",
    "DatasetError",
    "DatasetEntryError",
    "CheckpointError",
    "TrainingError",
    "RasterizerError",
    "AllSplatsDeadError",
]
