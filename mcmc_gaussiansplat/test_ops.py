import math

import pytest
import torch
import torch.nn as nn

from . import ops


def _params_and_adam(n=6, seed=0):
    g = torch.Generator().manual_seed(seed)
    params = {
        "means": nn.Parameter(torch.randn(n, 3, generator=g)),
        "opacities": nn.Parameter(torch.randn(n, 1, generator=g)),
    }
    optimizers = {name: torch.optim.Adam([p], lr=0.01) for name, p in params.items()}
    # One step so Adam has per-splat moments
    for p in params.values():
        p.grad = torch.ones_like(p)
    for opt in optimizers.values():
        opt.step()
        opt.zero_grad()
    return params, optimizers


def _state(optimizers, params, name):
    return optimizers[name].state[params[name]]


def test_append_pads_optimizer_state_with_zeros():
    params, optimizers = _params_and_adam(n=4)
    old_avg = _state(optimizers, params, "means")["exp_avg"].clone()

    new = ops.append(params, optimizers, {"means": torch.zeros(2, 3), "opacities": torch.zeros(2, 1)})

    assert new["means"].shape[0] == 6
    assert optimizers["means"].param_groups[0]["params"][0] is new["means"]
    state = _state(optimizers, new, "means")
    assert state["exp_avg"].shape == (6, 3)
    assert torch.equal(state["exp_avg"][:4], old_avg)
    assert torch.count_nonzero(state["exp_avg"][4:]) == 0
    assert torch.count_nonzero(state["exp_avg_sq"][4:]) == 0
    # The old parameter is no longer tracked
    assert params["means"] not in optimizers["means"].state


def test_append_rejects_missing_or_mismatched_attributes():
    params, optimizers = _params_and_adam()
    with pytest.raises(KeyError):
        ops.append(params, optimizers, {"means": torch.zeros(1, 3)})
    with pytest.raises(ValueError):
        ops.append(params, optimizers, {"means": torch.zeros(1, 3), "opacities": torch.zeros(2, 1)})
    # Nothing was committed
    assert params["means"].shape[0] == 6
    assert _state(optimizers, params, "means")["exp_avg"].shape[0] == 6


def test_remove_compacts_params_and_state_in_order():
    params, optimizers = _params_and_adam(n=5)
    with torch.no_grad():
        params["means"][:, 0] = torch.arange(5.0)
    _state(optimizers, params, "means")["exp_avg"][:, 0] = torch.arange(5.0)

    mask = torch.tensor([False, True, False, True, False])
    new = ops.remove(params, optimizers, mask)

    assert new["means"][:, 0].tolist() == [0.0, 2.0, 4.0]
    assert _state(optimizers, new, "means")["exp_avg"][:, 0].tolist() == [0.0, 2.0, 4.0]
    assert new["opacities"].shape[0] == 3


def test_reset_state_zeroes_only_selected_rows():
    params, optimizers = _params_and_adam(n=4)
    ops.reset_state(params, optimizers, torch.tensor([1, 3]))
    avg = _state(optimizers, params, "opacities")["exp_avg"]
    assert torch.count_nonzero(avg[[1, 3]]) == 0
    assert torch.all(avg[[0, 2]] != 0)


def test_overwrite_replaces_rows_in_place():
    params, _ = _params_and_adam(n=4)
    before = params["means"]
    ops.overwrite(params, torch.tensor([2]), {"means": torch.full((1, 3), 7.0)})
    assert params["means"] is before
    assert params["means"][2].tolist() == [7.0, 7.0, 7.0]


def test_rotation_matrices_are_orthonormal():
    q = torch.nn.functional.normalize(torch.randn(10, 4, generator=torch.Generator().manual_seed(1)), dim=-1)
    R = ops.normalized_quat_to_rotmat(q)
    eye = torch.eye(3).expand(10, 3, 3)
    assert torch.allclose(R @ R.transpose(-1, -2), eye, atol=1e-5)
    assert torch.allclose(torch.linalg.det(R), torch.ones(10), atol=1e-5)


def test_covariance_is_symmetric_with_squared_scale_eigenvalues():
    q = torch.tensor([[1.0, 0.0, 0.0, 0.0]])
    s = torch.tensor([[1.0, 2.0, 3.0]])
    cov = ops.covariance_from_quat_scale(q, s)
    assert torch.allclose(cov[0], torch.diag(torch.tensor([1.0, 4.0, 9.0])))


def test_relocation_with_single_copy_is_identity():
    op = torch.tensor([0.1, 0.5, 0.9])
    scales = torch.rand(3, 3) + 0.1
    new_op, new_scales = ops.compute_relocation(op, scales, torch.ones(3, dtype=torch.long))
    assert torch.allclose(new_op, op, atol=1e-6)
    assert torch.allclose(new_scales, scales, atol=1e-6)


def test_relocation_two_copies_matches_closed_form():
    o = 0.6
    new_op, new_scales = ops.compute_relocation(torch.tensor([o]), torch.ones(1, 3), torch.tensor([2]))
    o_new = 1 - math.sqrt(1 - o)
    denom = 2 * o_new - o_new ** 2 / math.sqrt(2)
    assert new_op.item() == pytest.approx(o_new, rel=1e-6)
    assert new_scales[0, 0].item() == pytest.approx(o / denom, rel=1e-5)
    # r copies of o' composite back to o
    assert 1 - (1 - new_op.item()) ** 2 == pytest.approx(o, rel=1e-6)


def test_relocation_ratio_is_clamped():
    op = torch.tensor([0.5, 0.5])
    scales = torch.ones(2, 3)
    a, sa = ops.compute_relocation(op, scales, torch.tensor([ops.N_MAX_RELOCATION, 500]))
    assert torch.allclose(a[0], a[1])
    assert torch.allclose(sa[0], sa[1])
    assert torch.isfinite(sa).all()
