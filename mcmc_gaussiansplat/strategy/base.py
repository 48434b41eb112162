"""
Base strategy class for splat density control.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import torch

from ..errors import TrainingError
from ..gs_types import ViewportInfo
from ..model import GaussianModel

logger = logging.getLogger("mcmc_gs.strategy")


class Strategy(ABC):
    """
    Abstract base class for density control strategies.

    A strategy owns the GaussianModel and decides, after each optimizer
    step, whether to change the splat population. It also keeps per-splat
    statistics (accumulated screen-space gradient and visibility count)
    index-aligned with the model.
    """

    def __init__(self, model: GaussianModel, verbose: bool = False):
        """
        Initialize strategy.

        Args:
            model: Already initialized model; the strategy takes ownership
            verbose: If True, log detailed messages during refinement
        """
        self.model = model
        self.verbose = verbose
        self.state: Optional[Dict[str, torch.Tensor]] = None
        self._state_revision: Optional[int] = None

    def initialize_state(self):
        """
        (Re)initialize per-splat statistics on the model's device.
        """
        num_points = self.model.size()
        device = self.model.device
        self.state = {
            # Accumulated norm of image plane gradients
            "grad2d": torch.zeros(num_points, device=device),
            # Number of times each splat was visible
            "count": torch.zeros(num_points, device=device),
        }
        self._state_revision = self.model.revision

    def _ensure_state(self):
        if self.state is None:
            self.initialize_state()
            return
        n = self.model.size()
        if self.state["grad2d"].shape[0] != n or self._state_revision != self.model.revision:
            if self.verbose:
                logger.debug(
                    f"[dim]Model changed outside the strategy "
                    f"({self.state['grad2d'].shape[0]} -> {n} splats), reinitializing state[/dim]"
                )
            self.initialize_state()

    def _state_appended(self, n_new: int):
        device = self.model.device
        for key in ("grad2d", "count"):
            self.state[key] = torch.cat([self.state[key], torch.zeros(n_new, device=device)])
        self._state_revision = self.model.revision

    def _state_touched(self, indices: Optional[torch.Tensor] = None):
        if indices is not None:
            for key in ("grad2d", "count"):
                self.state[key][indices] = 0
        self._state_revision = self.model.revision

    def check_sanity(self):
        """
        Validate that parameters and optimizers are consistent.

        Raises:
            TrainingError: If a parameter is missing from its optimizer or an
                optimizer state array is not aligned with the model
        """
        optimizers = self.model._optimizers_dict()
        n = self.model.size()
        for key, param in self.model.get_params_dict().items():
            if key not in optimizers:
                continue
            opt = optimizers[key]
            if not any(p is param for group in opt.param_groups for p in group["params"]):
                raise TrainingError(f"Parameter '{key}' not found in optimizer '{key}'")
            for state_key, value in opt.state.get(param, {}).items():
                if isinstance(value, torch.Tensor) and value.dim() > 0 and value.shape[0] != n:
                    raise TrainingError(
                        f"Optimizer state '{key}.{state_key}' has {value.shape[0]} rows, model has {n}"
                    )

    def step_pre_backward(self, render_info: Dict[str, Any]):
        """
        Callback executed before loss.backward().

        Retains the gradient of the projected 2D means so it can be
        accumulated after the backward pass.
        """
        means2d = render_info.get("means2d")
        if isinstance(means2d, torch.Tensor) and means2d.requires_grad:
            means2d.retain_grad()

    @abstractmethod
    def step_post_backward(
        self,
        iteration: int,
        render_info: Dict[str, Any],
        lr: Optional[float] = None,
    ):
        """
        Callback executed after the optimizer step.

        Args:
            iteration: Current training iteration
            render_info: Auxiliary buffers returned by the rasterizer
            lr: Current position learning rate
        """

    def _accumulate_gradients(self, render_info: Dict[str, Any]):
        """
        Accumulate screen-space gradient norms for visible splats.

        Uses the gradient of `means2d` when the rasterizer provides it,
        normalized by the viewport so the statistic is resolution
        independent. Falls back to the gradient of the 3D means.
        """
        self._ensure_state()
        viewport = ViewportInfo(
            width=render_info.get("width", 1),
            height=render_info.get("height", 1),
            n_cameras=render_info.get("n_cameras", 1),
        )

        means2d = render_info.get("means2d")
        if isinstance(means2d, torch.Tensor) and means2d.grad is not None:
            grads = means2d.grad.detach().clone()
            if grads.dim() == 3:  # [C, N, 2]
                grads = grads[0]
            grads[..., 0] *= viewport.width / 2.0 * viewport.n_cameras
            grads[..., 1] *= viewport.height / 2.0 * viewport.n_cameras
        elif self.model.means.grad is not None:
            grads = self.model.means.grad.detach()
        else:
            return

        if grads.shape[0] != self.model.size():
            # Buffers belong to a population that has since changed
            return

        grad_norms = torch.norm(grads, dim=-1)
        radii = render_info.get("radii")
        if isinstance(radii, torch.Tensor):
            if radii.dim() == 3:  # [C, N, 2]
                visible = (radii[0] > 0).all(dim=-1)
            elif radii.dim() == 2:  # [C, N]
                visible = radii[0] > 0
            else:
                visible = radii > 0
        else:
            visible = grad_norms > 0

        self.state["grad2d"][visible] += grad_norms[visible]
        self.state["count"][visible] += 1

    def error_statistic(self) -> torch.Tensor:
        """Mean accumulated screen-space gradient per splat."""
        self._ensure_state()
        return self.state["grad2d"] / self.state["count"].clamp_min(1)

    def reset_state(self):
        """Reset accumulated statistics."""
        if self.state is not None:
            self.state["grad2d"].zero_()
            self.state["count"].zero_()
