import json

import pytest

from . import train, trainer
from .config import TrainingConfig
from .conftest import SoftSplatRasterizer


def _data_dirs(tmp_path):
    sparse = tmp_path / "sparse"
    images = tmp_path / "images"
    sparse.mkdir()
    images.mkdir()
    return str(sparse), str(images)


def test_train_end_to_end(tmp_path, monkeypatch, scene):
    sparse, images = _data_dirs(tmp_path)
    monkeypatch.setattr(train, "ColmapDataset", lambda *args, **kwargs: scene)
    monkeypatch.setattr(trainer, "GsplatRasterizer", SoftSplatRasterizer)
    out = tmp_path / "out"

    code = train.main([
        "--colmap-path", sparse, "--images-path", images, "--output-dir", str(out),
        "--device", "cpu", "--iterations", "12", "--max-splats", "150",
        "--refine-start-iter", "2", "--refine-stop-iter", "10", "--refine-every", "2",
        "--sh-degree", "1", "--save-steps", "--eval-steps", "--no-tensorboard", "--verbosity", "0",
    ])

    assert code == 0
    saved = TrainingConfig.from_json(out / "cfg.json")
    assert saved.iterations == 12 and saved.max_splats == 150
    assert (out / "checkpoints" / "checkpoint_final.pt").exists()
    assert (out / "point_cloud.ply").exists()
    assert (out / "training.log").exists()


def test_invalid_paths_exit_with_status_one(tmp_path, capsys):
    code = train.main(["--colmap-path", str(tmp_path / "missing"), "--images-path", str(tmp_path)])
    assert code == 1
    assert "COLMAP path does not exist" in capsys.readouterr().err


def test_invalid_hyperparameter_exit_with_status_one(tmp_path, capsys):
    sparse, images = _data_dirs(tmp_path)
    code = train.main([
        "--colmap-path", sparse, "--images-path", images,
        "--refine-start-iter", "100", "--refine-stop-iter", "50",
    ])
    assert code == 1
    assert "refine_start_iter" in capsys.readouterr().err


def test_argument_errors_exit_with_status_two():
    with pytest.raises(SystemExit) as excinfo:
        train.main(["--growth-schedule", "exponential"])
    assert excinfo.value.code == 2


def test_view_mode_requires_a_ply(capsys):
    assert train.main(["--mode", "view"]) == 1
    assert "--ply-path" in capsys.readouterr().err


def test_json_config_provides_defaults(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"iterations": 5, "growth_schedule": "linear", "background": [1, 1, 1]}))

    cfg = train.config_from_args(train.parse_args(["--config", str(path)]))
    assert cfg.iterations == 5
    assert cfg.growth_schedule == "linear"
    assert cfg.background == (1, 1, 1)

    cfg = train.config_from_args(train.parse_args(["--config", str(path), "--iterations", "9"]))
    assert cfg.iterations == 9


def test_flags_map_onto_config_fields():
    cfg = train.config_from_args(train.parse_args([
        "--no-tensorboard", "--antialiasing", "--noise-stop-iter", "100", "--background", "1", "0", "0",
    ]))
    assert cfg.enable_tensorboard is False
    assert cfg.antialiasing is True
    assert cfg.noise_stop_iter == 100
    assert cfg.background == (1.0, 0.0, 0.0)
