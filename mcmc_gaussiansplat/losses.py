"""
Loss functions for MCMC Gaussian Splatting training.
"""
from dataclasses import dataclass

import torch
from torchmetrics.functional.image import structural_similarity_index_measure


@dataclass
class LossTerms:
    total: torch.Tensor
    l1: torch.Tensor
    ssim: torch.Tensor  # 1 - SSIM
    opacity_reg: torch.Tensor
    scale_reg: torch.Tensor


def ssim_loss(render, gt):
    """
    1 - SSIM between two [H, W, C] images in [0, 1].
    """
    render_perm = render.permute(2, 0, 1).unsqueeze(0)
    gt_perm = gt.permute(2, 0, 1).unsqueeze(0)
    return 1.0 - structural_similarity_index_measure(render_perm, gt_perm, data_range=1.0)


def photometric_loss(render, gt, lambda_dssim=0.2):
    """
    Weighted L1 + D-SSIM.

    Args:
        render: Rendered image [H, W, 3]
        gt: Ground truth image [H, W, 3]
        lambda_dssim: Weight of the structural term

    Returns:
        (loss, l1, 1 - ssim)
    """
    l1 = (render - gt).abs().mean()
    if lambda_dssim > 0:
        d_ssim = ssim_loss(render, gt)
    else:
        d_ssim = torch.zeros((), device=render.device)
    return (1.0 - lambda_dssim) * l1 + lambda_dssim * d_ssim, l1, d_ssim


def scale_regularization(scales, weight=0.01):
    """
    Penalize large splat scales.

    Args:
        scales: Tensor of shape [N, 3] containing activated scales
        weight: Regularization weight

    Returns:
        Scalar regularization loss
    """
    return weight * scales.abs().mean()


def opacity_regularization(opacities, weight=0.01):
    """
    Penalize opacity so splats that do not earn their keep fade out and get
    relocated.

    Args:
        opacities: Tensor of shape [N, 1] containing activated opacities
        weight: Regularization weight

    Returns:
        Scalar regularization loss
    """
    return weight * opacities.abs().mean()


def training_loss(render, gt, model, lambda_dssim=0.2, opacity_reg=0.01, scale_reg=0.01) -> LossTerms:
    """Photometric loss plus the MCMC opacity and scale regularizers."""
    loss, l1, d_ssim = photometric_loss(render, gt, lambda_dssim)
    zero = torch.zeros((), device=render.device)
    opacity_term = opacity_regularization(model.opacities, opacity_reg) if opacity_reg > 0 else zero
    scale_term = scale_regularization(model.scales, scale_reg) if scale_reg > 0 else zero
    return LossTerms(
        total=loss + opacity_term + scale_term,
        l1=l1,
        ssim=d_ssim,
        opacity_reg=opacity_term,
        scale_reg=scale_term,
    )
