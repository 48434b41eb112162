"""
Strategy module for splat density control.

Separates the population-control logic from the model, following the
architecture of the gsplat library, so different policies can be swapped.
"""

from .base import Strategy
from .growth import (
    GROWTH_SCHEDULES,
    GROWTH_SELECTORS,
    linear_schedule,
    multiplicative_schedule,
    opacity_selector,
    top_error_selector,
)
from .mcmc import MCMCStrategy, RefineRecord

__all__ = [
    "Strategy",
    "MCMCStrategy",
    "RefineRecord",
    "GROWTH_SCHEDULES",
    "GROWTH_SELECTORS",
    "multiplicative_schedule",
    "linear_schedule",
    "top_error_selector",
    "opacity_selector",
]
