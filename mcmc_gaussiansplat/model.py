import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import torch
import torch.nn as nn
from plyfile import PlyData, PlyElement, PlyParseError

from . import ops
from .errors import CheckpointError
from .gs_types import PARAM_NAMES, GSOptimizers
from .utils import inverse_sigmoid, nearest_neighbor_distances, num_sh_bases, rgb_to_sh

# Module-level logger
logger = logging.getLogger("mcmc_gs.model")


class GaussianModel(nn.Module):
    """
    Index-aligned parameter arrays for N splats.

    Row i of every parameter and of every optimizer state tensor refers to the
    same splat. Structural changes (add / remove / replace_subset) rewrite all
    of them together while holding `lock`; a concurrent reader that takes the
    same lock (see `snapshot`) never sees a half-applied change.

    Raw values are stored pre-activation: log-scales, logit opacities and
    unnormalized quaternions.
    """

    def __init__(
        self,
        means: torch.Tensor,
        scales: torch.Tensor,
        quats: torch.Tensor,
        opacities: torch.Tensor,
        features_dc: torch.Tensor,
        features_rest: torch.Tensor,
        sh_degree: int = 3,
        active_sh_degree: int = 0,
    ):
        super().__init__()
        n = means.shape[0]
        for name, value in zip(PARAM_NAMES[1:], (scales, quats, opacities, features_dc, features_rest)):
            if value.shape[0] != n:
                raise ValueError(f"'{name}' has {value.shape[0]} rows, expected {n}")
        if features_rest.shape[1] != num_sh_bases(sh_degree) - 1:
            raise ValueError(
                f"features_rest holds {features_rest.shape[1]} coefficients, "
                f"expected {num_sh_bases(sh_degree) - 1} for SH degree {sh_degree}"
            )
        self.sh_degree = sh_degree
        self.active_sh_degree = min(active_sh_degree, sh_degree)

        # --- Learnable Parameters ---
        self._means = nn.Parameter(means)                  # [N, 3]
        self._scales = nn.Parameter(scales)                # [N, 3] log-space
        self._quats = nn.Parameter(quats)                  # [N, 4] (w, x, y, z)
        self._opacities = nn.Parameter(opacities)          # [N, 1] logit-space
        self._features_dc = nn.Parameter(features_dc)      # [N, 1, 3]
        self._features_rest = nn.Parameter(features_rest)  # [N, K-1, 3]

        self.optimizers: Optional[GSOptimizers] = None
        self.lock = threading.RLock()
        # Bumped on every structural change; consumers holding per-splat
        # auxiliary buffers compare against it to know they are stale.
        self.revision = 0

    @classmethod
    def from_point_cloud(
        cls,
        init_points: torch.Tensor,
        init_colors: torch.Tensor,
        sh_degree: int = 3,
        init_opacity: float = 0.5,
        init_scale: float = 1.0,
    ) -> "GaussianModel":
        """
        Seed a model from a point cloud.

        Args:
            init_points: [N, 3] positions
            init_colors: [N, 3] RGB colors in [0, 1]
            sh_degree: Maximum spherical harmonics degree
            init_opacity: Initial activated opacity
            init_scale: Multiplier on the nearest-neighbour distance used as initial scale
        """
        device = init_points.device
        num_points = init_points.shape[0]
        if num_points == 0:
            raise ValueError("Cannot initialize a model from an empty point cloud")

        with torch.no_grad():
            dist = nearest_neighbor_distances(init_points) * init_scale
        scales = torch.log(dist.unsqueeze(1).repeat(1, 3))

        quats = torch.zeros(num_points, 4, device=device)
        quats[:, 0] = 1.0

        opacities = inverse_sigmoid(init_opacity * torch.ones(num_points, 1, device=device))
        features_dc = rgb_to_sh(init_colors.float()).unsqueeze(1)
        features_rest = torch.zeros(num_points, num_sh_bases(sh_degree) - 1, 3, device=device)

        return cls(init_points.float().clone(), scales, quats, opacities, features_dc, features_rest, sh_degree)

    # --- Activated views ---

    @property
    def means(self): return self._means

    @property
    def scales(self): return torch.exp(self._scales)

    @property
    def quats(self): return torch.nn.functional.normalize(self._quats, dim=-1)

    @property
    def opacities(self): return torch.sigmoid(self._opacities)

    @property
    def sh(self): return torch.cat([self._features_dc, self._features_rest], dim=1)

    @property
    def device(self): return self._means.device

    def size(self) -> int:
        return self._means.shape[0]

    def __len__(self):
        return self.size()

    def increment_sh_degree(self):
        if self.active_sh_degree < self.sh_degree:
            self.active_sh_degree += 1
            logger.debug(f"[dim]Active SH degree -> {self.active_sh_degree}[/dim]")

    # --- Parameter / optimizer plumbing ---

    def get_params_dict(self) -> Dict[str, nn.Parameter]:
        """Get model parameters as dictionary for the ops/strategy interface."""
        return {
            "means": self._means,
            "scales": self._scales,
            "quats": self._quats,
            "opacities": self._opacities,
            "features_dc": self._features_dc,
            "features_rest": self._features_rest,
        }

    def update_params_from_dict(self, params: Dict[str, nn.Parameter]):
        """Commit parameters produced by a structural op."""
        self._means = params["means"]
        self._scales = params["scales"]
        self._quats = params["quats"]
        self._opacities = params["opacities"]
        self._features_dc = params["features_dc"]
        self._features_rest = params["features_rest"]

    def _optimizers_dict(self) -> Dict[str, torch.optim.Optimizer]:
        return self.optimizers.as_dict() if self.optimizers is not None else {}

    def create_optimizers(
        self,
        lr_means: float = 0.00016,
        lr_scales: float = 0.005,
        lr_quats: float = 0.001,
        lr_opacities: float = 0.05,
        lr_sh: float = 0.0025,
        scene_scale: float = 1.0,
    ) -> GSOptimizers:
        """Create one Adam per parameter group and bind it to this model.

        Args:
            lr_means: Base learning rate for positions (multiplied by scene_scale)
            lr_scales: Learning rate for log-scales
            lr_quats: Learning rate for rotations
            lr_opacities: Learning rate for opacity logits
            lr_sh: Learning rate for the SH DC band (higher bands use lr_sh / 20)
            scene_scale: Scene extent used to scale the position learning rate

        Returns:
            GSOptimizers bound to this model
        """
        self.optimizers = GSOptimizers(
            means=torch.optim.Adam([self._means], lr=lr_means * scene_scale, eps=1e-15),
            scales=torch.optim.Adam([self._scales], lr=lr_scales, eps=1e-15),
            quats=torch.optim.Adam([self._quats], lr=lr_quats, eps=1e-15),
            opacities=torch.optim.Adam([self._opacities], lr=lr_opacities, eps=1e-15),
            features_dc=torch.optim.Adam([self._features_dc], lr=lr_sh, eps=1e-15),
            features_rest=torch.optim.Adam([self._features_rest], lr=lr_sh / 20.0, eps=1e-15),
        )
        return self.optimizers

    # --- Structural mutation ---

    def add(self, new_splats: Dict[str, torch.Tensor]) -> range:
        """
        Append splats given as raw (pre-activation) attribute tensors.

        Returns:
            Index range assigned to the new splats
        """
        with self.lock:
            n_before = self.size()
            params = ops.append(self.get_params_dict(), self._optimizers_dict(), new_splats)
            self.update_params_from_dict(params)
            self.revision += 1
            return range(n_before, self.size())

    def remove(self, mask: torch.Tensor):
        """
        Remove splats selected by a boolean mask [N] or an index tensor.
        Survivors keep their relative order.
        """
        mask = self._as_mask(mask)
        with self.lock:
            params = ops.remove(self.get_params_dict(), self._optimizers_dict(), mask)
            self.update_params_from_dict(params)
            self.revision += 1

    def replace_subset(
        self,
        indices: torch.Tensor,
        new_values: Dict[str, torch.Tensor],
        reset_optimizer_state: bool = True,
    ):
        """
        Overwrite raw attributes at existing indices.

        Args:
            indices: Long tensor of splat indices
            new_values: Raw values keyed by parameter name (any subset)
            reset_optimizer_state: Zero the optimizer moments of the touched rows
        """
        indices = indices.to(self.device).long()
        with self.lock:
            params = self.get_params_dict()
            ops.overwrite(params, indices, new_values)
            if reset_optimizer_state:
                self.reset_optimizer_state(indices)
            self.revision += 1

    def reset_optimizer_state(self, indices: torch.Tensor):
        """Zero the Adam moments of the given rows, leaving the parameters untouched."""
        with self.lock:
            ops.reset_state(self.get_params_dict(), self._optimizers_dict(), indices.to(self.device).long())

    @torch.no_grad()
    def translate_means(self, delta: torch.Tensor):
        """Per-element in-place position update (not a structural change)."""
        self._means.add_(delta)

    def _as_mask(self, mask: torch.Tensor) -> torch.Tensor:
        mask = mask.to(self.device)
        if mask.dtype == torch.bool:
            if mask.shape[0] != self.size():
                raise ValueError(f"Mask has {mask.shape[0]} entries, model has {self.size()} splats")
            return mask
        full = torch.zeros(self.size(), dtype=torch.bool, device=self.device)
        full[mask.long()] = True
        return full

    # --- Snapshots and persistence ---

    def snapshot(self) -> Dict[str, torch.Tensor]:
        """Detached copy of all raw attributes, taken under the structural lock."""
        with self.lock:
            return {name: p.detach().clone() for name, p in self.get_params_dict().items()}

    def checkpoint_dict(self) -> dict:
        return {
            "sh_degree": self.sh_degree,
            "active_sh_degree": self.active_sh_degree,
            "params": {name: t.cpu() for name, t in self.snapshot().items()},
        }

    @classmethod
    def from_checkpoint_dict(cls, state: dict, device: Union[str, torch.device] = "cpu") -> "GaussianModel":
        params = {name: state["params"][name].to(device) for name in PARAM_NAMES}
        return cls(
            **params,
            sh_degree=state["sh_degree"],
            active_sh_degree=state.get("active_sh_degree", 0),
        )

    def save_checkpoint(self, path: Union[str, Path], iteration: int = 0, **extra):
        """Save raw attributes (plus any extra entries) with torch.save."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "iteration": iteration,
            "num_gaussians": self.size(),
            "model": self.checkpoint_dict(),
        }
        payload.update(extra)
        try:
            torch.save(payload, path)
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {path}: {e}") from e
        return path

    @classmethod
    def load_checkpoint(cls, checkpoint_path, device='cpu'):
        """Load model from checkpoint. Returns (model, full checkpoint dict)."""
        try:
            checkpoint = torch.load(checkpoint_path, map_location=device, weights_only=False)
            model = cls.from_checkpoint_dict(checkpoint["model"], device=device)
        except (OSError, KeyError, RuntimeError) as e:
            raise CheckpointError(f"Failed to load checkpoint {checkpoint_path}: {e}") from e

        logger.info(f"[green]✓ Loaded model from[/green] {checkpoint_path}")
        if 'iteration' in checkpoint:
            logger.debug(f"[dim]Checkpoint iteration: {checkpoint['iteration']}[/dim]")
        logger.debug(f"[dim]Number of splats: {model.size():,}[/dim]")
        return model, checkpoint

    def save_ply(self, path):
        """Save splats in the standard 3DGS PLY layout (raw, pre-activation values)."""
        snap = self.snapshot()
        xyz = snap["means"].cpu().numpy()
        n = xyz.shape[0]
        normals = np.zeros_like(xyz)
        # f_dc / f_rest are stored channel-major as in the reference layout
        f_dc = snap["features_dc"].transpose(1, 2).reshape(n, -1).cpu().numpy()
        f_rest = snap["features_rest"].transpose(1, 2).reshape(n, -1).cpu().numpy()
        opacities = snap["opacities"].reshape(n, 1).cpu().numpy()
        scale = snap["scales"].cpu().numpy()
        rotation = snap["quats"].cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in ['x', 'y', 'z', 'nx', 'ny', 'nz']]
        dtype_full += [(attribute, 'f4') for attribute in ['f_dc_0', 'f_dc_1', 'f_dc_2']]
        dtype_full += [(f'f_rest_{i}', 'f4') for i in range(f_rest.shape[1])]
        dtype_full += [('opacity', 'f4')]
        dtype_full += [(attribute, 'f4') for attribute in ['scale_0', 'scale_1', 'scale_2']]
        dtype_full += [(attribute, 'f4') for attribute in ['rot_0', 'rot_1', 'rot_2', 'rot_3']]

        attributes = np.concatenate(
            (xyz, normals, f_dc, f_rest, opacities, scale, rotation), axis=1
        ).astype(np.float32)
        elements = np.empty(n, dtype=dtype_full)
        elements[:] = list(map(tuple, attributes))

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            PlyData([PlyElement.describe(elements, 'vertex')]).write(str(path))
        except OSError as e:
            raise CheckpointError(f"Failed to write PLY {path}: {e}") from e
        logger.info(f"[green]✓ Saved {n:,} splats to[/green] {path}")

    @classmethod
    def load_ply(cls, path, device='cpu') -> "GaussianModel":
        """Load a model written by `save_ply` (or any standard 3DGS PLY)."""
        try:
            vertex = PlyData.read(str(path))['vertex']
        except (OSError, ValueError, KeyError, PlyParseError) as e:
            raise CheckpointError(f"Failed to read PLY {path}: {e}") from e

        names = [p.name for p in vertex.properties]

        def stack(keys):
            return np.stack([np.asarray(vertex[k], dtype=np.float32) for k in keys], axis=1)

        n = len(vertex['x'])
        rest_keys = sorted((k for k in names if k.startswith('f_rest_')), key=lambda k: int(k.split('_')[-1]))
        n_rest = len(rest_keys) // 3
        sh_degree = int(round((n_rest + 1) ** 0.5)) - 1
        if num_sh_bases(sh_degree) - 1 != n_rest:
            raise CheckpointError(f"PLY {path} has {len(rest_keys)} f_rest entries, not a valid SH layout")

        def tensor(a):
            return torch.from_numpy(a).to(device)

        means = tensor(stack(['x', 'y', 'z']))
        f_dc = tensor(stack(['f_dc_0', 'f_dc_1', 'f_dc_2'])).reshape(n, 3, 1).transpose(1, 2)
        if n_rest > 0:
            f_rest = tensor(stack(rest_keys)).reshape(n, 3, n_rest).transpose(1, 2)
        else:
            f_rest = torch.zeros(n, 0, 3, device=device)
        opacities = tensor(stack(['opacity']))
        scales = tensor(stack(['scale_0', 'scale_1', 'scale_2']))
        quats = tensor(stack(['rot_0', 'rot_1', 'rot_2', 'rot_3']))

        model = cls(means, scales, quats, opacities, f_dc.contiguous(), f_rest.contiguous(),
                    sh_degree=sh_degree, active_sh_degree=sh_degree)
        logger.info(f"[green]✓ Loaded {n:,} splats from[/green] {path}")
        return model
