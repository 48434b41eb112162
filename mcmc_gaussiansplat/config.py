"""
Training configuration.

All hyperparameters live in one dataclass; `validate()` runs before any data
is loaded so malformed settings fail fast with a ConfigError.
"""
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ConfigError
from .strategy.growth import GROWTH_SCHEDULES, GROWTH_SELECTORS


@dataclass
class TrainingConfig:
    # Data
    colmap_path: str = ""
    images_path: str = ""
    output_dir: str = "./output"
    downscale: int = 1
    test_every: int = 8  # hold out every n-th image for evaluation (0: no hold-out)
    preload_images: bool = False

    # Run
    iterations: int = 30_000
    seed: int = 42
    device: str = "cuda"
    resume_from: Optional[str] = None

    # Model initialization
    sh_degree: int = 3
    sh_degree_interval: int = 1000
    init_opacity: float = 0.5
    init_scale: float = 0.1

    # Learning rates
    lr_means: float = 0.00016
    lr_means_final_ratio: float = 0.01
    lr_scales: float = 0.005
    lr_quats: float = 0.001
    lr_opacities: float = 0.05
    lr_sh: float = 0.0025

    # Loss
    lambda_dssim: float = 0.2
    opacity_reg: float = 0.01
    scale_reg: float = 0.01

    # MCMC strategy
    max_splats: int = 1_000_000
    min_opacity: float = 0.005
    refine_every: int = 100
    refine_start_iter: int = 500
    refine_stop_iter: int = 25_000
    noise_lr: float = 5e5
    noise_stop_iter: Optional[int] = None
    growth_schedule: str = "multiplicative"
    grow_factor: float = 1.05
    growth_selector: str = "top_error"

    # Rendering
    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    antialiasing: bool = False

    # Cadence
    save_steps: List[int] = field(default_factory=lambda: [7_000, 30_000])
    eval_steps: List[int] = field(default_factory=lambda: [7_000, 30_000])
    log_interval: int = 100
    eval_lpips: bool = False
    save_eval_images: bool = True
    export_ply: bool = True

    # Logging
    verbosity: int = 1
    enable_tensorboard: bool = True
    tensorboard_image_interval: int = 1000
    tensorboard_histogram_interval: int = 5000

    # Viewer
    headless: bool = True
    viewer_port: int = 8080

    def validate(self, require_data: bool = True) -> "TrainingConfig":
        """
        Check hyperparameters and paths.

        Args:
            require_data: Also check that the dataset paths exist

        Raises:
            ConfigError: On the first invalid setting
        """
        if require_data:
            if not self.colmap_path or not os.path.isdir(self.colmap_path):
                raise ConfigError(f"COLMAP path does not exist: '{self.colmap_path}'")
            if not self.images_path or not os.path.isdir(self.images_path):
                raise ConfigError(f"Images path does not exist: '{self.images_path}'")
        if self.resume_from is not None and not os.path.isfile(self.resume_from):
            raise ConfigError(f"Checkpoint to resume from does not exist: '{self.resume_from}'")

        positive = ("iterations", "refine_every", "max_splats", "sh_degree_interval",
                    "log_interval", "downscale", "tensorboard_image_interval",
                    "tensorboard_histogram_interval")
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.refine_start_iter < 0:
            raise ConfigError(f"refine_start_iter must be >= 0, got {self.refine_start_iter}")
        if self.refine_start_iter >= self.refine_stop_iter:
            raise ConfigError(
                f"refine_start_iter ({self.refine_start_iter}) must be smaller than "
                f"refine_stop_iter ({self.refine_stop_iter})"
            )
        if not 0.0 < self.min_opacity < 1.0:
            raise ConfigError(f"min_opacity must be in (0, 1), got {self.min_opacity}")
        if not 0.0 < self.init_opacity < 1.0:
            raise ConfigError(f"init_opacity must be in (0, 1), got {self.init_opacity}")
        if self.init_opacity <= self.min_opacity:
            raise ConfigError(
                f"init_opacity ({self.init_opacity}) must be above min_opacity ({self.min_opacity}), "
                f"otherwise every seed splat starts dead"
            )
        if not 0 <= self.sh_degree <= 3:
            raise ConfigError(f"sh_degree must be in 0..3, got {self.sh_degree}")
        if self.init_scale <= 0.0:
            raise ConfigError(f"init_scale must be positive, got {self.init_scale}")
        if not 0.0 < self.lr_means_final_ratio <= 1.0:
            raise ConfigError(f"lr_means_final_ratio must be in (0, 1], got {self.lr_means_final_ratio}")
        if not 0.0 <= self.lambda_dssim <= 1.0:
            raise ConfigError(f"lambda_dssim must be in [0, 1], got {self.lambda_dssim}")
        if self.growth_schedule not in GROWTH_SCHEDULES:
            raise ConfigError(
                f"Unknown growth schedule '{self.growth_schedule}' (choose from {sorted(GROWTH_SCHEDULES)})"
            )
        if self.growth_selector not in GROWTH_SELECTORS:
            raise ConfigError(
                f"Unknown growth selector '{self.growth_selector}' (choose from {sorted(GROWTH_SELECTORS)})"
            )
        if self.grow_factor < 1.0:
            raise ConfigError(f"grow_factor must be >= 1, got {self.grow_factor}")
        if len(self.background) != 3:
            raise ConfigError(f"background must have 3 components, got {self.background}")
        for name in ("lr_means", "lr_scales", "lr_quats", "lr_opacities", "lr_sh", "noise_lr"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not 0 <= self.verbosity <= 3:
            raise ConfigError(f"verbosity must be in 0..3, got {self.verbosity}")
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        data["background"] = list(self.background)
        return data

    def save_json(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    @classmethod
    def from_json(cls, path) -> "TrainingConfig":
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to read config {path}: {e}") from e
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys in {path}: {sorted(unknown)}")
        if "background" in data:
            data["background"] = tuple(data["background"])
        return cls(**data)
