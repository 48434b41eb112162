"""
Held-out evaluation: render every test camera and report PSNR / SSIM
(and optionally LPIPS) averaged over the views.
"""
import logging
from pathlib import Path
from typing import Dict, Optional

import imageio.v2 as imageio
import numpy as np
import torch
from torchmetrics.image import PeakSignalNoiseRatio, StructuralSimilarityIndexMeasure

from .errors import DatasetEntryError
from .rendering import Rasterizer

logger = logging.getLogger("mcmc_gs.metrics")


class Evaluator:
    """Quality metrics over a held-out dataset."""

    def __init__(self, device, use_lpips: bool = False):
        self.device = torch.device(device)
        self.psnr = PeakSignalNoiseRatio(data_range=(0, 1.0)).to(self.device)
        self.ssim = StructuralSimilarityIndexMeasure(data_range=1.0).to(self.device)
        self.lpips = None
        if use_lpips:
            from torchmetrics.image import LearnedPerceptualImagePatchSimilarity
            self.lpips = LearnedPerceptualImagePatchSimilarity(net_type='squeeze', normalize=True).to(self.device)

    def _reset(self):
        self.psnr.reset()
        self.ssim.reset()
        if self.lpips is not None:
            self.lpips.reset()

    @torch.no_grad()
    def evaluate(
        self,
        model,
        dataset,
        rasterizer: Rasterizer,
        background: torch.Tensor,
        antialiasing: bool = False,
        image_dir: Optional[Path] = None,
    ) -> Dict[str, float]:
        """
        Render all cameras of `dataset` and compare against ground truth.

        Args:
            model: GaussianModel to evaluate
            dataset: Held-out dataset yielding (Camera, image [H, W, 3])
            rasterizer: Rasterizer used for training
            background: [3] background color
            antialiasing: Render with antialiasing
            image_dir: When given, write side-by-side render|gt PNGs here

        Returns:
            Mean metrics over the views plus the number of evaluated views
        """
        self._reset()
        if image_dir is not None:
            image_dir = Path(image_dir)
            image_dir.mkdir(parents=True, exist_ok=True)

        n_views = 0
        for idx in range(len(dataset)):
            try:
                cam, gt_image = dataset[idx]
            except DatasetEntryError as e:
                logger.warning(f"[yellow]⚠ Skipping eval view {idx}:[/yellow] {e}")
                continue
            gt_image = gt_image.to(self.device)
            out = rasterizer.render(cam, model, background, antialiasing=antialiasing)
            render = out.image.clamp(0, 1)

            render_perm = render.permute(2, 0, 1).unsqueeze(0)
            gt_perm = gt_image.permute(2, 0, 1).unsqueeze(0)
            self.psnr.update(render_perm, gt_perm)
            self.ssim.update(render_perm, gt_perm)
            if self.lpips is not None:
                self.lpips.update(render_perm, gt_perm)
            n_views += 1

            if image_dir is not None:
                canvas = torch.cat([render, gt_image], dim=1).cpu().numpy()
                stem = Path(cam.image_name).stem or f"view_{idx:04d}"
                imageio.imwrite(image_dir / f"{stem}.png", (canvas * 255).astype(np.uint8))

        if n_views == 0:
            return {"num_views": 0}

        metrics = {
            "psnr": self.psnr.compute().item(),
            "ssim": self.ssim.compute().item(),
            "num_views": n_views,
        }
        if self.lpips is not None:
            metrics["lpips"] = self.lpips.compute().item()
        return metrics
