import torch

from .conftest import random_model
from .logger import GaussianSplattingLogger, generate_run_name
from .losses import LossTerms
from .strategy import RefineRecord


def test_run_name_format():
    adjective, noun, date, time = generate_run_name().split('-')
    assert adjective.isalpha() and noun.isalpha()
    assert len(date) == 4 and len(time) == 4


def test_writes_events(tmp_path):
    model = random_model(16)
    model.create_optimizers()
    terms = LossTerms(*(torch.tensor(v) for v in (0.5, 0.3, 0.2, 0.0, 0.01)))

    with GaussianSplattingLogger(str(tmp_path), run_name="run") as tb:
        tb.log_losses(terms, step=0)
        tb.log_model_stats(model, step=0, cap_max=32)
        tb.log_quality_metrics({"psnr": 20.0, "ssim": 0.7, "num_views": 2}, step=0)
        tb.log_refine_event(RefineRecord(iteration=0, n_before=16, n_after=18, n_relocated=1), step=0)
        tb.log_learning_rates(model.optimizers, step=0)
        tb.log_images(torch.rand(8, 8, 3), torch.rand(8, 8, 3), alpha=torch.rand(8, 8), step=0)
        tb.log_gaussian_histograms(model, step=0)
        tb.log_system_metrics(step=0)
        tb.log_hyperparameters({"iterations": 10, "save_steps": [5]}, {"final/loss": 0.1})

    assert list((tmp_path / "run").glob("events.out.tfevents.*"))


def test_disabled_logger_writes_nothing(tmp_path):
    tb = GaussianSplattingLogger(str(tmp_path / "tb"), enabled=False)
    tb.log_system_metrics(step=0)
    tb.log_hyperparameters({"iterations": 10}, {})
    tb.close()
    assert tb.run_name is None
    assert not (tmp_path / "tb").exists()
