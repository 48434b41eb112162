"""
TensorBoard logging for MCMC training runs.

Every run writes into its own sub-directory named after a generated,
human-friendly run name, so several runs of the same scene can be
compared side by side in one TensorBoard instance.
"""

import random
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional

import psutil
import torch
from torch.utils.tensorboard import SummaryWriter

GB = float(1024 ** 3)

ADJECTIVES = [
    'amber', 'brisk', 'cobalt', 'dusky', 'fleet', 'gilded', 'hazy', 'indigo',
    'jade', 'lucid', 'misty', 'nimble', 'opal', 'polar', 'rustic', 'scarlet',
    'sunlit', 'teal', 'umber', 'velvet', 'windy', 'zesty',
]

NOUNS = [
    'atlas', 'bay', 'cairn', 'dune', 'fjord', 'grove', 'heath', 'inlet',
    'knoll', 'lagoon', 'mesa', 'moor', 'peak', 'reef', 'shoal', 'spire',
    'steppe', 'tundra', 'vale', 'weir',
]


def generate_run_name() -> str:
    """adjective-noun-MMDD-HHMM, e.g. cobalt-fjord-1019-1430"""
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}-{datetime.now().strftime('%m%d-%H%M')}"


class GaussianSplattingLogger:
    """
    Thin wrapper around `SummaryWriter` for the training loop.

    A disabled logger accepts every call and writes nothing, so the trainer
    never has to branch on whether TensorBoard is on.
    """

    def __init__(self, log_dir: str, enabled: bool = True, run_name: Optional[str] = None):
        """
        Args:
            log_dir: Parent directory of the per-run event directories
            enabled: Write events at all
            run_name: Name of the run sub-directory (generated when None)
        """
        self.enabled = enabled
        self.writer = None
        self.run_name = None
        self.log_dir = None
        if enabled:
            self.run_name = run_name or generate_run_name()
            self.log_dir = Path(log_dir) / self.run_name
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.writer = SummaryWriter(str(self.log_dir))

    def _scalars(self, group: str, values: Mapping[str, float], step: int):
        for name, value in values.items():
            self.writer.add_scalar(f'{group}/{name}', value, step)

    def log_losses(self, terms, step: int):
        """Log the loss decomposition of one iteration (a `LossTerms`)."""
        if not self.enabled:
            return

        values = {
            'Total': terms.total.item(),
            'L1': terms.l1.item(),
            'DSSIM': terms.ssim.item(),
        }
        # Regularizers are only plotted when they are switched on
        for name, term in (('OpacityReg', terms.opacity_reg), ('ScaleReg', terms.scale_reg)):
            value = term.item()
            if value > 0:
                values[name] = value
        self._scalars('Loss', values, step)

    def log_quality_metrics(self, metrics: Dict[str, float], step: int, prefix: str = 'Quality'):
        if not self.enabled:
            return
        self._scalars(prefix, {k.upper(): v for k, v in metrics.items() if k in ('psnr', 'ssim', 'lpips')}, step)

    @torch.no_grad()
    def log_model_stats(self, model, step: int, min_opacity: float = 0.005, cap_max: Optional[int] = None):
        """
        Log population statistics.

        Besides the splat count this tracks the dead fraction (opacity at or
        below `min_opacity`, i.e. what the next refine step will relocate) and,
        when `cap_max` is given, how much of the splat cap is in use.
        """
        if not self.enabled:
            return

        opacities = model.opacities.detach().flatten()
        n = model.size()
        values = {
            'NumGaussians': n,
            'MeanOpacity': opacities.mean().item(),
            'DeadFraction': (opacities <= min_opacity).float().mean().item(),
            'ActiveSHDegree': model.active_sh_degree,
        }
        if cap_max:
            values['CapUsage'] = n / cap_max
        self._scalars('Model', values, step)

    def log_images(self, rendered: torch.Tensor, ground_truth: torch.Tensor,
                   alpha: Optional[torch.Tensor] = None, step: int = 0):
        """
        Log render, target and their per-pixel error.

        Args:
            rendered: Rendered image [H, W, 3]
            ground_truth: Target image [H, W, 3]
            alpha: Accumulated opacity [H, W] or [H, W, 1]
            step: Iteration
        """
        if not self.enabled:
            return

        error = (rendered - ground_truth).abs().mean(dim=-1, keepdim=True)
        images = {'Rendered': rendered, 'GroundTruth': ground_truth, 'Error': error}
        if alpha is not None:
            images['Alpha'] = alpha if alpha.dim() == 3 else alpha.unsqueeze(-1)
        for name, image in images.items():
            self.writer.add_image(f'Images/{name}', image.clamp(0, 1), step, dataformats='HWC')

    @torch.no_grad()
    def log_gaussian_histograms(self, model, step: int):
        if not self.enabled:
            return

        scales = model.scales.detach().cpu()
        self.writer.add_histogram('Histograms/Opacity', model.opacities.detach().cpu().flatten(), step)
        self.writer.add_histogram('Histograms/LogMaxScale', scales.max(dim=-1).values.log(), step)
        self.writer.add_histogram('Histograms/Anisotropy', scales.max(dim=-1).values / scales.min(dim=-1).values, step)

    def log_learning_rates(self, optimizers, step: int):
        if not self.enabled:
            return
        self._scalars('LearningRate', {
            name: optimizer.param_groups[0]['lr'] for name, optimizer in optimizers.as_dict().items()
        }, step)

    def log_refine_event(self, record, step: int):
        """Log what a refine boundary did (a `RefineRecord`)."""
        if not self.enabled:
            return
        self._scalars('Refine', {
            'Relocated': record.n_relocated,
            'Grown': record.n_after - record.n_before,
            'NumGaussians': record.n_after,
        }, step)

    def log_hyperparameters(self, hparams: Dict, metrics: Dict[str, float]):
        """
        Log the run configuration together with its final metrics.

        Values TensorBoard cannot display (lists, tuples, None) are stored
        as their string form.
        """
        if not self.enabled:
            return

        clean = {k: v if isinstance(v, (int, float, str, bool)) else str(v) for k, v in hparams.items()}
        self.writer.add_hparams(clean, metrics, run_name='.')

    def log_system_metrics(self, step: int):
        """Host CPU/RAM (psutil) and per-device PyTorch CUDA memory."""
        if not self.enabled:
            return

        memory = psutil.virtual_memory()
        self._scalars('System', {
            'CPU_Percent': psutil.cpu_percent(interval=None),
            'RAM_Used_GB': memory.used / GB,
            'RAM_Percent': memory.percent,
            'Process_RSS_GB': psutil.Process().memory_info().rss / GB,
        }, step)

        if torch.cuda.is_available():
            for i in range(torch.cuda.device_count()):
                self._scalars(f'System/CUDA_{i}', {
                    'Allocated_GB': torch.cuda.memory_allocated(i) / GB,
                    'Reserved_GB': torch.cuda.memory_reserved(i) / GB,
                    'Peak_GB': torch.cuda.max_memory_allocated(i) / GB,
                }, step)

    def close(self):
        if self.writer is not None:
            self.writer.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
