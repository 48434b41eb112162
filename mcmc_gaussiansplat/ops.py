"""
Helper operations for splat manipulation with optimizer state synchronization.

These functions handle:
- Appending splats (new optimizer state is zero)
- Removing splats (optimizer state is compacted with the same mask)
- Overwriting attribute rows in place
- Zeroing optimizer state for selected rows
- The MCMC opacity/scale correction used by relocation and growth

Every structural operation first computes ALL new parameters and optimizer
states, then commits them in one pass, so parameters and optimizer state are
never observed with different lengths.
"""

import math
from typing import Callable, Dict, Iterable, Optional, Tuple

import torch
import torch.nn as nn


# Upper bound on the number of copies one splat can be shared between.
N_MAX_RELOCATION = 51


def map_param_to_optimizer(
    param: nn.Parameter,
    optimizers: Dict[str, torch.optim.Optimizer],
) -> Tuple[Optional[torch.optim.Optimizer], Optional[int], Optional[int]]:
    """
    Find which optimizer and param_group contains a parameter.

    Args:
        param: The parameter to find
        optimizers: Dictionary of optimizers

    Returns:
        Tuple of (optimizer, group_idx, param_idx) or (None, None, None)
    """
    for opt in optimizers.values():
        for group_idx, group in enumerate(opt.param_groups):
            for param_idx, p in enumerate(group["params"]):
                if p is param:
                    return opt, group_idx, param_idx
    return None, None, None


def _is_per_splat(value, param: torch.Tensor) -> bool:
    # exp_avg / exp_avg_sq match the parameter shape, "step" is a scalar
    return isinstance(value, torch.Tensor) and value.dim() > 0 and value.shape == param.shape


@torch.no_grad()
def _update_param_with_optimizer(
    param_fn: Callable[[str, torch.Tensor], torch.Tensor],
    optimizer_fn: Callable[[str, torch.Tensor], torch.Tensor],
    params: Dict[str, nn.Parameter],
    optimizers: Dict[str, torch.optim.Optimizer],
    names: Optional[Iterable[str]] = None,
) -> Dict[str, nn.Parameter]:
    """
    Rewrite parameters and their optimizer state in lockstep.

    Args:
        param_fn: (name, old_param) -> new tensor for the parameter
        optimizer_fn: (state_key, old_state_tensor) -> new per-splat state tensor
        params: Model parameters
        optimizers: Optimizers keyed like params
        names: Subset of parameter names to rewrite (default: all)

    Returns:
        New params dictionary. The caller commits it to the model.
    """
    names = list(params.keys()) if names is None else list(names)

    # Phase 1: compute everything without touching the optimizers
    staged = []
    for name in names:
        param = params[name]
        new_param = nn.Parameter(param_fn(name, param), requires_grad=param.requires_grad)
        opt, group_idx, param_idx = map_param_to_optimizer(param, optimizers)
        new_state = None
        if opt is not None and param in opt.state:
            new_state = {}
            for key, value in opt.state[param].items():
                if _is_per_splat(value, param):
                    new_state[key] = optimizer_fn(key, value)
                else:
                    # Scalar tensor or non-tensor state (step counter)
                    new_state[key] = value
        staged.append((name, param, new_param, opt, group_idx, param_idx, new_state))

    # Phase 2: commit
    new_params = dict(params)
    for name, param, new_param, opt, group_idx, param_idx, new_state in staged:
        if opt is not None:
            opt.param_groups[group_idx]["params"][param_idx] = new_param
            if param in opt.state:
                del opt.state[param]
            if new_state is not None:
                opt.state[new_param] = new_state
        new_params[name] = new_param
    return new_params


def append(
    params: Dict[str, nn.Parameter],
    optimizers: Dict[str, torch.optim.Optimizer],
    new_values: Dict[str, torch.Tensor],
) -> Dict[str, nn.Parameter]:
    """
    Append splats to every parameter. Optimizer state for the new rows is zero.

    Args:
        params: Model parameters
        optimizers: Optimizers for each parameter group
        new_values: Raw (pre-activation) values for the new splats, one entry per parameter

    Returns:
        Updated params dictionary
    """
    missing = set(params) - set(new_values)
    if missing:
        raise KeyError(f"Missing attributes for new splats: {sorted(missing)}")
    counts = {name: value.shape[0] for name, value in new_values.items()}
    n_new = next(iter(counts.values()))
    if any(c != n_new for c in counts.values()):
        raise ValueError(f"New splat attributes have mismatched lengths: {counts}")
    if n_new == 0:
        return params

    def param_fn(name, p):
        return torch.cat([p, new_values[name].to(device=p.device, dtype=p.dtype)], dim=0)

    def optimizer_fn(key, v):
        padding = torch.zeros((n_new,) + v.shape[1:], dtype=v.dtype, device=v.device)
        return torch.cat([v, padding], dim=0)

    return _update_param_with_optimizer(param_fn, optimizer_fn, params, optimizers)


def remove(
    params: Dict[str, nn.Parameter],
    optimizers: Dict[str, torch.optim.Optimizer],
    mask: torch.Tensor,
) -> Dict[str, nn.Parameter]:
    """
    Remove splats selected by mask, keeping the relative order of survivors.

    Args:
        params: Model parameters
        optimizers: Optimizers for each parameter group
        mask: Boolean mask selecting which splats to REMOVE

    Returns:
        Updated params dictionary
    """
    keep_mask = ~mask
    if mask.sum().item() == 0:
        return params

    def param_fn(name, p):
        return p[keep_mask]

    def optimizer_fn(key, v):
        return v[keep_mask]

    return _update_param_with_optimizer(param_fn, optimizer_fn, params, optimizers)


@torch.no_grad()
def overwrite(
    params: Dict[str, nn.Parameter],
    indices: torch.Tensor,
    values: Dict[str, torch.Tensor],
):
    """In-place attribute overwrite at existing indices."""
    for name, value in values.items():
        p = params[name]
        p.data[indices] = value.to(device=p.device, dtype=p.dtype)


@torch.no_grad()
def reset_state(
    params: Dict[str, nn.Parameter],
    optimizers: Dict[str, torch.optim.Optimizer],
    indices: torch.Tensor,
    names: Optional[Iterable[str]] = None,
):
    """
    Zero the per-splat optimizer state (Adam moments) for the given indices.

    Args:
        params: Model parameters
        optimizers: Optimizers for each parameter group
        indices: Long tensor of splat indices
        names: Subset of parameter names (default: all)
    """
    names = list(params.keys()) if names is None else list(names)
    for name in names:
        param = params[name]
        opt, _, _ = map_param_to_optimizer(param, optimizers)
        if opt is None or param not in opt.state:
            continue
        for value in opt.state[param].values():
            if _is_per_splat(value, param):
                value[indices] = 0


def normalized_quat_to_rotmat(quat: torch.Tensor) -> torch.Tensor:
    """
    Convert normalized quaternions to rotation matrices.

    Args:
        quat: Quaternions [N, 4] in (w, x, y, z) format, assumed normalized

    Returns:
        Rotation matrices [N, 3, 3]
    """
    w, x, y, z = quat[:, 0], quat[:, 1], quat[:, 2], quat[:, 3]

    R00 = 1 - 2 * (y * y + z * z)
    R01 = 2 * (x * y - w * z)
    R02 = 2 * (x * z + w * y)

    R10 = 2 * (x * y + w * z)
    R11 = 1 - 2 * (x * x + z * z)
    R12 = 2 * (y * z - w * x)

    R20 = 2 * (x * z - w * y)
    R21 = 2 * (y * z + w * x)
    R22 = 1 - 2 * (x * x + y * y)

    return torch.stack([
        torch.stack([R00, R01, R02], dim=-1),
        torch.stack([R10, R11, R12], dim=-1),
        torch.stack([R20, R21, R22], dim=-1)
    ], dim=-2)


def covariance_from_quat_scale(quats: torch.Tensor, scales: torch.Tensor) -> torch.Tensor:
    """R diag(s^2) R^T for normalized quats [N, 4] and activated scales [N, 3]."""
    R = normalized_quat_to_rotmat(quats)
    M = R * scales.unsqueeze(-2)
    return M @ M.transpose(-1, -2)


def _binomial_table(n_max: int, device) -> torch.Tensor:
    table = [[float(math.comb(n, k)) for k in range(n_max + 1)] for n in range(n_max + 1)]
    return torch.tensor(table, dtype=torch.float64, device=device)


@torch.no_grad()
def compute_relocation(
    opacities: torch.Tensor,
    scales: torch.Tensor,
    ratios: torch.Tensor,
    n_max: int = N_MAX_RELOCATION,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Opacity and scale for a splat whose mass is shared between `ratio` copies.

    Rendering `ratio` copies with the returned opacity/scale approximates the
    original single splat:
        o' = 1 - (1 - o)^(1/r)
        s' = o / (sum_{k<r} C(r, k+1) (-1)^k o'^(k+1) / sqrt(k+1)) * s

    Args:
        opacities: Activated opacities [M]
        scales: Activated scales [M, 3]
        ratios: Number of copies per entry [M] (clamped to [1, n_max])

    Returns:
        (new_opacities [M], new_scales [M, 3])
    """
    device = opacities.device
    r = ratios.long().clamp(1, n_max)
    op = opacities.double()
    new_op = 1.0 - torch.pow(1.0 - op, 1.0 / r.double())

    k = torch.arange(n_max, device=device)  # [K]
    binoms = _binomial_table(n_max, device)[r.unsqueeze(-1), (k + 1).unsqueeze(0)]  # [M, K], zero for k >= r
    signs = torch.where(k % 2 == 0, 1.0, -1.0).double()
    powers = torch.pow(new_op.unsqueeze(-1), (k + 1).double().unsqueeze(0))
    denom = (binoms * signs / torch.sqrt((k + 1).double()) * powers).sum(dim=-1)

    coeff = (op / denom).to(scales.dtype)
    new_scales = coeff.unsqueeze(-1) * scales
    return new_op.to(opacities.dtype), new_scales
