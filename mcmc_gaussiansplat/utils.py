"""
Utility functions for MCMC Gaussian Splatting training.
"""
from typing import Optional

import numpy as np
import torch
from rich import box
from rich.table import Table
from scipy.spatial import cKDTree

# 0th order SH coefficient: 1/(2*sqrt(pi))
SH_C0 = 0.28209479177387814


def inverse_sigmoid(x):
    return torch.log(x / (1 - x))


def rgb_to_sh(rgb: torch.Tensor) -> torch.Tensor:
    """Convert RGB in [0, 1] to SH DC coefficients (centered around 0.5)."""
    return (rgb - 0.5) / SH_C0


def sh_to_rgb(sh: torch.Tensor) -> torch.Tensor:
    return sh * SH_C0 + 0.5


def num_sh_bases(degree: int) -> int:
    return (degree + 1) ** 2


def nearest_neighbor_distances(points: torch.Tensor, k: int = 3) -> torch.Tensor:
    """
    Mean distance to the k nearest neighbours of every point.

    Args:
        points: [N, 3] point positions (any device)
        k: Number of neighbours to average over

    Returns:
        [N] tensor of distances on the input device, clamped away from zero
    """
    n = points.shape[0]
    if n < 2:
        return torch.ones(n, device=points.device)
    pts = points.detach().cpu().numpy().astype(np.float64)
    k_eff = min(k, n - 1)
    # First neighbour returned by the tree is the point itself
    dists, _ = cKDTree(pts).query(pts, k=k_eff + 1)
    mean_sq = (dists[:, 1:] ** 2).mean(axis=1)
    dist = torch.from_numpy(np.sqrt(mean_sq)).float().to(points.device)
    return dist.clamp_min(1e-7)


class CameraSampler:
    """
    Camera sampler that ensures a uniform distribution across all cameras.

    Shuffles all camera indices and iterates through them before reshuffling.
    A new pass never starts with the camera that ended the previous pass, so
    the same camera is never drawn twice in a row (when more than one camera
    is available). Entries reported as corrupt can be excluded.
    """
    def __init__(self, num_cameras: int, generator: Optional[torch.Generator] = None):
        self.num_cameras = num_cameras
        self.generator = generator
        self.excluded = set()
        self.indices = []
        self.current_idx = 0
        self.last = None
        self._reshuffle()

    def _reshuffle(self):
        """Shuffle the camera indices."""
        perm = torch.randperm(self.num_cameras, generator=self.generator).tolist()
        self.indices = [i for i in perm if i not in self.excluded]
        if len(self.indices) > 1 and self.indices[0] == self.last:
            self.indices[0], self.indices[-1] = self.indices[-1], self.indices[0]
        self.current_idx = 0

    @property
    def num_available(self) -> int:
        return self.num_cameras - len(self.excluded)

    def exclude(self, idx: int):
        self.excluded.add(idx)

    def next(self) -> int:
        """Get next camera index."""
        if self.num_available == 0:
            raise StopIteration
        while True:
            if self.current_idx >= len(self.indices):
                self._reshuffle()
            idx = self.indices[self.current_idx]
            self.current_idx += 1
            if idx not in self.excluded:
                self.last = idx
                return idx

    def state_dict(self) -> dict:
        return {
            "indices": list(self.indices),
            "current_idx": self.current_idx,
            "last": self.last,
            "excluded": sorted(self.excluded),
        }

    def load_state_dict(self, state: dict):
        self.indices = list(state["indices"])
        self.current_idx = state["current_idx"]
        self.last = state["last"]
        self.excluded = set(state["excluded"])

    def __iter__(self):
        return self

    def __next__(self):
        return self.next()


def create_metrics_table(metrics: dict, title: Optional[str] = None) -> Table:
    """
    Create a Rich table displaying evaluation metrics.

    Args:
        metrics: Mapping of metric name to value
        title: Optional table title

    Returns:
        Rich Table object
    """
    table = Table(title=title, show_header=False, box=box.SIMPLE, padding=(0, 1))
    table.add_column("Metric", style="cyan", width=18)
    table.add_column("Value", style="yellow")
    for name, value in metrics.items():
        if isinstance(value, float):
            table.add_row(name, f"{value:.4f}")
        else:
            table.add_row(name, f"{value:,}" if isinstance(value, int) else str(value))
    return table


def format_phase_description(phase, current_loss, current_l1, current_ssim, current_psnr, num_gaussians):
    """
    Format a compact phase description for progress bar.

    Args:
        phase: Training phase string
        current_loss: Current total loss
        current_l1: Current L1 loss
        current_ssim: Current SSIM loss
        current_psnr: Current PSNR value
        num_gaussians: Current number of splats

    Returns:
        Formatted string
    """
    return (
        f"[cyan]{phase}[/cyan] │ "
        f"Loss: [yellow]{current_loss:.4f}[/yellow] │ "
        f"L1: {current_l1:.4f} │ "
        f"SSIM: {current_ssim:.4f} │ "
        f"PSNR: {current_psnr:.2f} dB │ "
        f"GS: [green]{num_gaussians:,}[/green]"
    )
