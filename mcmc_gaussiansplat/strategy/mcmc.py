"""
MCMC density control.

Implements:
- Relocation of dead (low-opacity) splats onto alive ones, sampled in
  proportion to opacity, with the sampled mass shared between the copies
- Budgeted growth by splitting selected splats (pluggable policy)
- Opacity-weighted position noise scaled by the current position learning rate
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import torch

from .. import ops
from ..errors import AllSplatsDeadError, ConfigError
from ..model import GaussianModel
from .base import Strategy
from .growth import GrowthSchedule, GrowthSelector, multiplicative_schedule, top_error_selector

logger = logging.getLogger("mcmc_gs.strategy")


@dataclass
class RefineRecord:
    iteration: int
    n_before: int
    n_after: int
    n_relocated: int
    grown_parents: List[int] = field(default_factory=list)


def op_sigmoid(x, k=100, x0=0.995):
    return 1 / (1 + torch.exp(-k * (x - x0)))


class MCMCStrategy(Strategy):
    """
    MCMC density control.

    Every `refine_every` iterations in [refine_start_iter, refine_stop_iter):
    1. Dead splats (opacity <= min_opacity) are relocated onto alive splats
    2. The population grows towards `cap_max` following the growth schedule
    After every iteration (until `noise_stop_iter`) low-opacity splats are
    jittered along their own covariance.

    The population never shrinks and never exceeds `cap_max`.
    """

    def __init__(
        self,
        model: GaussianModel,
        cap_max: int = 1_000_000,
        min_opacity: float = 0.005,
        noise_lr: float = 5e5,
        refine_start_iter: int = 500,
        refine_stop_iter: int = 25_000,
        refine_every: int = 100,
        noise_stop_iter: Optional[int] = None,
        growth_schedule: Optional[GrowthSchedule] = None,
        growth_selector: Optional[GrowthSelector] = None,
        generator: Optional[torch.Generator] = None,
        verbose: bool = False,
    ):
        """
        Initialize the MCMC strategy.

        Args:
            model: Seeded model, owned by the strategy from now on
            cap_max: Maximum number of splats
            min_opacity: Opacity at or below which a splat is dead
            noise_lr: Noise scale, multiplied by the current position learning rate
            refine_start_iter: First iteration at which refinement may happen
            refine_stop_iter: Refinement happens strictly before this iteration
            refine_every: Refinement cadence in iterations
            noise_stop_iter: Stop noise injection at this iteration (None: never)
            growth_schedule: Target population per refine step (default: x1.05)
            growth_selector: Which splats to split (default: top error)
            generator: Seeded RNG used for every random draw of the strategy
            verbose: Log detailed refine summaries
        """
        super().__init__(model, verbose=verbose)
        if model.size() > cap_max:
            raise ConfigError(f"Seed model has {model.size():,} splats, above the budget of {cap_max:,}")
        self.cap_max = cap_max
        self.min_opacity = min_opacity
        self.noise_lr = noise_lr
        self.refine_start_iter = refine_start_iter
        self.refine_stop_iter = refine_stop_iter
        self.refine_every = refine_every
        self.noise_stop_iter = noise_stop_iter
        self.growth_schedule = growth_schedule or multiplicative_schedule()
        self.growth_selector = growth_selector or top_error_selector
        self.generator = generator
        self.history: List[RefineRecord] = []

    def should_refine(self, iteration: int) -> bool:
        return (
            self.refine_start_iter <= iteration < self.refine_stop_iter
            and iteration % self.refine_every == 0
        )

    def step_post_backward(
        self,
        iteration: int,
        render_info: Dict[str, Any],
        lr: Optional[float] = None,
    ) -> Optional[RefineRecord]:
        self._accumulate_gradients(render_info)

        record = None
        if self.should_refine(iteration):
            record = self.refine(iteration)

        if lr is not None and (self.noise_stop_iter is None or iteration < self.noise_stop_iter):
            self.inject_noise(lr)
        return record

    def refine(self, iteration: int) -> RefineRecord:
        self._ensure_state()
        n_before = self.model.size()
        n_relocated = self.relocate_dead()
        parents = self.grow(iteration)
        record = RefineRecord(
            iteration=iteration,
            n_before=n_before,
            n_after=self.model.size(),
            n_relocated=n_relocated,
            grown_parents=parents.tolist(),
        )
        self.history.append(record)
        self.reset_state()

        if self.verbose:
            logger.debug(
                f"[yellow]⚡ Refine @ {iteration:,}:[/yellow] [dim]relocated {n_relocated:,}, "
                f"grew {len(record.grown_parents):,} ({n_before:,} → {record.n_after:,})[/dim]"
            )
        return record

    @torch.no_grad()
    def _share_mass(self, parents: torch.Tensor) -> Dict[str, torch.Tensor]:
        """Raw opacity/scale for parents whose mass is shared with their new copies."""
        counts = torch.bincount(parents, minlength=self.model.size())[parents] + 1
        opacities = self.model.opacities.detach().flatten()[parents]
        scales = self.model.scales.detach()[parents]
        new_opacities, new_scales = ops.compute_relocation(opacities, scales, counts)
        eps = torch.finfo(new_opacities.dtype).eps
        new_opacities = new_opacities.clamp(min=self.min_opacity, max=1.0 - eps)
        return {
            "opacities": torch.logit(new_opacities).unsqueeze(-1),
            "scales": torch.log(new_scales),
        }

    @torch.no_grad()
    def relocate_dead(self) -> int:
        """
        Move dead splats onto alive ones sampled in proportion to opacity.

        The sampled sources and the relocated rows share the source mass, and
        the optimizer state of both is zeroed.

        Returns:
            Number of relocated splats

        Raises:
            AllSplatsDeadError: If no splat is above the opacity threshold
        """
        opacities = self.model.opacities.detach().flatten()
        dead_mask = opacities <= self.min_opacity
        n_dead = int(dead_mask.sum().item())
        if n_dead == 0:
            return 0

        alive_idx = (~dead_mask).nonzero(as_tuple=True)[0]
        if alive_idx.numel() == 0:
            raise AllSplatsDeadError(
                f"All {n_dead:,} splats have opacity <= {self.min_opacity}; "
                f"relocation has no alive splat to sample from."
            )
        dead_idx = dead_mask.nonzero(as_tuple=True)[0]

        probs = opacities[alive_idx]
        sampled = alive_idx[torch.multinomial(probs, n_dead, replacement=True, generator=self.generator)]

        with self.model.lock:
            self.model.replace_subset(sampled, self._share_mass(sampled), reset_optimizer_state=True)
            params = self.model.get_params_dict()
            copied = {name: p.detach()[sampled].clone() for name, p in params.items()}
            self.model.replace_subset(dead_idx, copied, reset_optimizer_state=True)

        self._state_touched(torch.cat([dead_idx, sampled]))
        return n_dead

    @torch.no_grad()
    def grow(self, iteration: int) -> torch.Tensor:
        """
        Split selected splats, appending one child per selection.

        Parents keep their index and optimizer state; their opacity and scale
        are reduced so parent and children together match the original
        footprint. Children start next to the parent, offset by noise drawn
        from the parent's covariance, with zero optimizer state.

        Returns:
            Parent index of every appended child
        """
        device = self.model.device
        n_current = self.model.size()
        n_target = min(self.cap_max, self.growth_schedule(n_current, self.cap_max, iteration, self))
        n_new = max(0, n_target - n_current)
        if n_new == 0:
            return torch.empty(0, dtype=torch.long, device=device)

        parents = self.growth_selector(self, n_new, self.generator).to(device).long()
        parents = parents[: self.cap_max - n_current]
        if parents.numel() == 0:
            return parents

        with self.model.lock:
            self.model.replace_subset(parents, self._share_mass(parents), reset_optimizer_state=False)
            params = self.model.get_params_dict()
            children = {name: p.detach()[parents].clone() for name, p in params.items()}

            rotmats = ops.normalized_quat_to_rotmat(self.model.quats.detach()[parents])
            scales = self.model.scales.detach()[parents]
            noise = torch.randn(parents.numel(), 3, device=device, generator=self.generator)
            children["means"] = children["means"] + torch.einsum("nij,nj,nj->ni", rotmats, scales, noise)
            self.model.add(children)

        self._state_appended(parents.numel())
        return parents

    @torch.no_grad()
    def inject_noise(self, lr: float):
        """
        Perturb positions along each splat's covariance.

        Nearly transparent splats move the most; opaque ones barely move.
        The amplitude follows the (decaying) position learning rate.
        """
        opacities = self.model.opacities.detach().flatten()
        covars = ops.covariance_from_quat_scale(self.model.quats.detach(), self.model.scales.detach())
        noise = torch.randn(self.model.size(), 3, device=self.model.device, generator=self.generator)
        noise = noise * op_sigmoid(1 - opacities).unsqueeze(-1) * self.noise_lr * lr
        noise = torch.einsum("bij,bj->bi", covars, noise)
        self.model.translate_means(noise)
