import threading

import pytest
import torch

from .conftest import random_model
from .errors import CheckpointError
from .gs_types import PARAM_NAMES
from .model import GaussianModel
from .utils import inverse_sigmoid, num_sh_bases, rgb_to_sh


def _step_optimizers(model, seed=0):
    g = torch.Generator().manual_seed(seed)
    for p in model.get_params_dict().values():
        p.grad = torch.randn(p.shape, generator=g)
    model.optimizers.step()
    model.optimizers.zero_grad()


def _assert_aligned(model):
    n = model.size()
    for name, p in model.get_params_dict().items():
        assert p.shape[0] == n, name
        opt = model.optimizers[name]
        assert opt.param_groups[0]["params"][0] is p
        for key, value in opt.state.get(p, {}).items():
            if isinstance(value, torch.Tensor) and value.dim() > 0:
                assert value.shape == p.shape, f"{name}.{key}"


def test_from_point_cloud_initialization():
    points = torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    colors = torch.full((4, 3), 0.25)
    model = GaussianModel.from_point_cloud(points, colors, sh_degree=2, init_opacity=0.3)

    assert model.size() == 4
    assert model._features_rest.shape == (4, num_sh_bases(2) - 1, 3)
    assert model.active_sh_degree == 0
    assert torch.allclose(model.opacities, torch.full((4, 1), 0.3), atol=1e-6)
    assert torch.allclose(model._features_dc[:, 0], rgb_to_sh(colors))
    assert torch.allclose(model.quats, torch.tensor([1.0, 0.0, 0.0, 0.0]).expand(4, 4))
    # Isotropic initial scales from neighbour distances
    assert torch.allclose(model.scales[:, 0], model.scales[:, 2])
    assert torch.all(model.scales > 0)


def test_from_point_cloud_rejects_empty_cloud():
    with pytest.raises(ValueError):
        GaussianModel.from_point_cloud(torch.zeros(0, 3), torch.zeros(0, 3))


def test_constructor_checks_row_counts():
    m = random_model(5)
    params = m.snapshot()
    params["quats"] = params["quats"][:4]
    with pytest.raises(ValueError):
        GaussianModel(**params, sh_degree=m.sh_degree)


def test_add_keeps_parameters_and_optimizer_state_aligned(small_model):
    small_model.create_optimizers()
    _step_optimizers(small_model)
    n = small_model.size()
    revision = small_model.revision

    new = {name: p.detach()[:3].clone() for name, p in small_model.get_params_dict().items()}
    added = small_model.add(new)

    assert added == range(n, n + 3)
    assert small_model.size() == n + 3
    assert small_model.revision > revision
    _assert_aligned(small_model)
    state = small_model.optimizers.means.state[small_model._means]
    assert torch.count_nonzero(state["exp_avg"][n:]) == 0


def test_remove_by_mask_and_indices(small_model):
    small_model.create_optimizers()
    _step_optimizers(small_model)
    n = small_model.size()
    keep_first = small_model._means[0].detach().clone()

    small_model.remove(torch.tensor([1, 2, 3]))
    assert small_model.size() == n - 3
    assert torch.equal(small_model._means[0], keep_first)
    _assert_aligned(small_model)

    mask = torch.zeros(small_model.size(), dtype=torch.bool)
    mask[-1] = True
    small_model.remove(mask)
    assert small_model.size() == n - 4
    _assert_aligned(small_model)

    with pytest.raises(ValueError):
        small_model.remove(torch.zeros(3, dtype=torch.bool))


def test_replace_subset_resets_touched_state_only(small_model):
    small_model.create_optimizers()
    _step_optimizers(small_model)
    idx = torch.tensor([0, 5])
    small_model.replace_subset(idx, {"opacities": inverse_sigmoid(torch.full((2, 1), 0.9))})

    assert torch.allclose(small_model.opacities[idx], torch.full((2, 1), 0.9), atol=1e-5)
    for name, p in small_model.get_params_dict().items():
        state = small_model.optimizers[name].state[p]
        assert torch.count_nonzero(state["exp_avg"][idx]) == 0
        assert torch.count_nonzero(state["exp_avg"][1]) > 0


def test_reset_optimizer_state_keeps_values(small_model):
    small_model.create_optimizers()
    _step_optimizers(small_model)
    before = small_model.snapshot()
    idx = torch.tensor([2, 7, 9])

    small_model.reset_optimizer_state(idx)

    for name, p in small_model.get_params_dict().items():
        assert torch.equal(p.detach(), before[name]), name
        state = small_model.optimizers[name].state[p]
        assert torch.count_nonzero(state["exp_avg"][idx]) == 0
        assert torch.count_nonzero(state["exp_avg_sq"][idx]) == 0
        assert torch.count_nonzero(state["exp_avg_sq"][0]) > 0


def test_snapshot_is_a_detached_copy(small_model):
    snap = small_model.snapshot()
    with torch.no_grad():
        small_model._means.add_(1.0)
    assert not torch.equal(snap["means"], small_model._means.detach())
    assert not snap["means"].requires_grad


def test_snapshot_never_sees_partial_structural_change(small_model):
    small_model.create_optimizers()
    stop = threading.Event()
    seen = []

    def reader():
        while not stop.is_set():
            snap = small_model.snapshot()
            seen.append({snap[name].shape[0] for name in PARAM_NAMES})

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for _ in range(30):
            new = {name: p.detach()[:2].clone() for name, p in small_model.get_params_dict().items()}
            small_model.add(new)
            small_model.remove(torch.tensor([0]))
    finally:
        stop.set()
        thread.join()

    assert seen
    assert all(len(lengths) == 1 for lengths in seen)


def test_checkpoint_round_trip(tmp_path, small_model):
    small_model.active_sh_degree = 1
    path = small_model.save_checkpoint(tmp_path / "ckpt.pt", iteration=12, note="hello")
    loaded, checkpoint = GaussianModel.load_checkpoint(path)

    assert checkpoint["iteration"] == 12
    assert checkpoint["note"] == "hello"
    assert loaded.sh_degree == small_model.sh_degree
    assert loaded.active_sh_degree == 1
    for name, p in small_model.get_params_dict().items():
        assert torch.allclose(loaded.get_params_dict()[name], p, atol=1e-6), name


def test_load_checkpoint_missing_file_raises(tmp_path):
    with pytest.raises(CheckpointError):
        GaussianModel.load_checkpoint(tmp_path / "missing.pt")


def test_ply_round_trip(tmp_path):
    model = random_model(20, sh_degree=2)
    with torch.no_grad():
        model._features_rest.normal_()
    path = tmp_path / "splats.ply"
    model.save_ply(path)
    loaded = GaussianModel.load_ply(path)

    assert loaded.sh_degree == 2
    assert loaded.active_sh_degree == 2
    for name, p in model.get_params_dict().items():
        assert torch.allclose(loaded.get_params_dict()[name], p.detach(), atol=1e-6), name


def test_load_ply_invalid_file_raises(tmp_path):
    bad = tmp_path / "bad.ply"
    bad.write_text("not a ply file")
    with pytest.raises(CheckpointError):
        GaussianModel.load_ply(bad)


def test_increment_sh_degree_saturates():
    model = random_model(4, sh_degree=1)
    model.increment_sh_degree()
    model.increment_sh_degree()
    assert model.active_sh_degree == 1
