"""
Pluggable growth policies for the MCMC strategy.

A growth policy has two parts:

- a *schedule* ``(n_current, budget, iteration, strategy) -> n_target`` that
  decides how many splats the model should hold after this refine step;
- a *selector* ``(strategy, n_new, generator) -> parent indices`` that picks
  which splats are split to reach that target. A parent may appear more than
  once; its mass is then shared between all of its copies.
"""

import math
from typing import TYPE_CHECKING, Callable, Dict, Optional

import torch

if TYPE_CHECKING:
    from .mcmc import MCMCStrategy

GrowthSchedule = Callable[[int, int, int, "MCMCStrategy"], int]
GrowthSelector = Callable[["MCMCStrategy", int, Optional[torch.Generator]], torch.Tensor]


def multiplicative_schedule(grow_factor: float = 1.05) -> GrowthSchedule:
    """Grow by a constant factor per refine step until the budget is reached."""
    def schedule(n_current, budget, iteration, strategy):
        return min(budget, int(grow_factor * n_current))
    return schedule


def linear_schedule() -> GrowthSchedule:
    """Spread the remaining budget evenly over the remaining refine steps, so
    the model reaches the budget at the last refine step before the stop iteration."""
    def schedule(n_current, budget, iteration, strategy):
        every = strategy.refine_every
        last = ((strategy.refine_stop_iter - 1) // every) * every
        remaining = max(1, (last - iteration) // every + 1)
        return min(budget, n_current + math.ceil((budget - n_current) / remaining))
    return schedule


def top_error_selector(strategy: "MCMCStrategy", n_new: int, generator=None) -> torch.Tensor:
    """
    Deterministic top-k by mean accumulated screen-space gradient.

    Ties are broken by index order (stable sort), so the selection does not
    depend on the random generator. At most one child per splat.
    """
    error = strategy.error_statistic()
    k = min(n_new, error.shape[0])
    order = torch.sort(error, descending=True, stable=True).indices
    return order[:k]


def opacity_selector(strategy: "MCMCStrategy", n_new: int, generator=None) -> torch.Tensor:
    """Categorical sampling proportional to opacity, with replacement."""
    probs = strategy.model.opacities.detach().flatten()
    return torch.multinomial(probs, n_new, replacement=True, generator=generator)


GROWTH_SCHEDULES: Dict[str, Callable[..., GrowthSchedule]] = {
    "multiplicative": multiplicative_schedule,
    "linear": linear_schedule,
}

GROWTH_SELECTORS: Dict[str, GrowthSelector] = {
    "top_error": top_error_selector,
    "opacity": opacity_selector,
}
