from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import torch


PARAM_NAMES = ("means", "scales", "quats", "opacities", "features_dc", "features_rest")


class RenderMode(str, Enum):
    """Render modes understood by the rasterizer (gsplat naming)."""
    RGB = "RGB"
    D = "D"
    ED = "ED"
    RGB_D = "RGB+D"
    RGB_ED = "RGB+ED"


@dataclass
class ViewportInfo:
    """Information about the current viewport/camera for gradient normalization."""
    width: int
    height: int
    n_cameras: int = 1


@dataclass
class RenderOutput:
    image: torch.Tensor  # [H, W, 3]
    alpha: torch.Tensor  # [H, W, 1]
    depth: Optional[torch.Tensor] = None  # [H, W] when a depth mode was requested
    # Per-splat auxiliary buffers (means2d with retained grad, radii, ...)
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GSOptimizers:
    means: torch.optim.Optimizer
    scales: torch.optim.Optimizer
    quats: torch.optim.Optimizer
    opacities: torch.optim.Optimizer
    features_dc: torch.optim.Optimizer
    features_rest: torch.optim.Optimizer

    def __getitem__(self, key):
        return getattr(self, key)

    def __setitem__(self, key, value):
        setattr(self, key, value)

    def as_dict(self) -> Dict[str, torch.optim.Optimizer]:
        return {name: getattr(self, name) for name in PARAM_NAMES}

    def step(self):
        for opt in self.as_dict().values():
            opt.step()

    def zero_grad(self):
        for opt in self.as_dict().values():
            opt.zero_grad(set_to_none=True)

    def state_dict(self) -> Dict[str, dict]:
        return {name: opt.state_dict() for name, opt in self.as_dict().items()}

    def load_state_dict(self, state: Dict[str, dict]):
        for name, opt in self.as_dict().items():
            opt.load_state_dict(state[name])


@dataclass
class GS_LR_Schedulers:
    # Only the positions decay; the other groups keep a constant LR.
    means: Optional[torch.optim.lr_scheduler.LRScheduler] = None

    def step(self):
        if self.means is not None:
            self.means.step()

    @classmethod
    def create_schedulers(cls, optimizers: GSOptimizers, total_steps: int, final_ratio: float = 0.01):
        gamma = final_ratio ** (1.0 / max(total_steps, 1))
        return cls(means=torch.optim.lr_scheduler.ExponentialLR(optimizers.means, gamma=gamma))
