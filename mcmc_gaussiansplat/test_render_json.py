import json

import imageio.v2 as imageio
import numpy as np
import pytest
import torch

from . import render_json, train
from .conftest import SoftSplatRasterizer, look_at_camera, random_model
from .dataset import camera_from_c2w
from .errors import ConfigError
from .model import GaussianModel
from .render_json import load_json_cameras, render_from_json


def _camera_entry(cam, img_id=None):
    entry = {
        "width": cam.width,
        "height": cam.height,
        "intrinsics": cam.K().tolist(),
        "extrinsics": {"c2w_matrix": torch.linalg.inv(cam.viewmat()).tolist()},
    }
    if img_id is not None:
        entry["img_id"] = img_id
    return entry


@pytest.fixture
def ply_and_cameras(tmp_path):
    ply = tmp_path / "model.ply"
    random_model(40, seed=5, opacity=0.9).save_ply(ply)
    front = look_at_camera((0.0, -3.0, 0.5), uid=0)
    side = look_at_camera((3.0, 0.0, 0.5), uid=1)
    entries = [
        _camera_entry(front, img_id="front"),
        {"img_id": "no_pose", "intrinsics": front.K().tolist(), "width": 24, "height": 24},
        _camera_entry(side),
        dict(_camera_entry(side, img_id="empty"), width=0),
    ]
    cameras_json = tmp_path / "cameras.json"
    cameras_json.write_text(json.dumps(entries))
    return ply, cameras_json, front


def test_camera_from_c2w_inverts_the_pose():
    cam = look_at_camera((1.0, -2.0, 0.5), uid=0)
    rebuilt = camera_from_c2w(torch.linalg.inv(cam.viewmat()).numpy(), cam.K().numpy(), cam.width, cam.height)
    assert torch.allclose(rebuilt.viewmat(), cam.viewmat(), atol=1e-5)
    assert (rebuilt.fx, rebuilt.cx, rebuilt.width) == (cam.fx, cam.cx, cam.width)


def test_incomplete_entries_are_skipped(ply_and_cameras):
    _, cameras_json, _ = ply_and_cameras
    cameras = load_json_cameras(cameras_json)
    # Unnamed cameras are numbered among the usable ones
    assert [c.image_name for c in cameras] == ["front", "1"]


def test_single_object_file(tmp_path):
    path = tmp_path / "cam.json"
    path.write_text(json.dumps(_camera_entry(look_at_camera((0.0, 3.0, 0.0), uid=0), img_id=7)))
    assert [c.image_name for c in load_json_cameras(path)] == ["7"]


@pytest.mark.parametrize("content", ["{ not json", "42"])
def test_unusable_json_is_a_config_error(tmp_path, content):
    path = tmp_path / "cam.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_json_cameras(path)


def test_missing_files_are_config_errors(tmp_path, ply_and_cameras):
    ply, cameras_json, _ = ply_and_cameras
    with pytest.raises(ConfigError):
        load_json_cameras(tmp_path / "missing.json")
    with pytest.raises(ConfigError):
        render_from_json(tmp_path / "missing.ply", cameras_json, tmp_path / "out")


def test_writes_one_png_per_camera(tmp_path, ply_and_cameras):
    ply, cameras_json, front = ply_and_cameras
    rasterizer = SoftSplatRasterizer()

    written = render_from_json(ply, cameras_json, tmp_path / "frames", rasterizer=rasterizer)

    assert sorted(p.name for p in written) == ["1.png", "front.png"]
    png = imageio.imread(tmp_path / "frames" / "front.png")
    assert png.shape == (front.height, front.width, 3) and png.dtype == np.uint8

    with torch.no_grad():
        expected = rasterizer.render(front, GaussianModel.load_ply(ply), torch.zeros(3)).image
    expected = (expected.clamp(0, 1).numpy() * 255).astype(np.int16)
    assert np.abs(png.astype(np.int16) - expected).max() <= 1


def test_render_mode_from_the_command_line(tmp_path, monkeypatch, ply_and_cameras):
    ply, cameras_json, _ = ply_and_cameras
    monkeypatch.setattr(render_json, "GsplatRasterizer", SoftSplatRasterizer)
    out = tmp_path / "cli_frames"

    code = train.main([
        "--mode", "render", "--ply-path", str(ply), "--cameras-json", str(cameras_json),
        "--output-dir", str(out), "--device", "cpu", "--verbosity", "0",
    ])

    assert code == 0
    assert sorted(p.name for p in out.glob("*.png")) == ["1.png", "front.png"]


def test_render_mode_requires_cameras(ply_and_cameras, capsys):
    ply, _, _ = ply_and_cameras
    assert train.main(["--mode", "render", "--ply-path", str(ply)]) == 1
    assert "--cameras-json" in capsys.readouterr().err
