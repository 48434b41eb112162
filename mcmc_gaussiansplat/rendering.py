"""
Rasterizer capability interface.

The training loop only depends on `Rasterizer.render`; the backward pass is
plain autograd through whatever tensors the backend returns. `GsplatRasterizer`
binds the interface to gsplat's CUDA rasterizer.
"""

import logging
from abc import ABC, abstractmethod

import torch

from .dataset import Camera
from .errors import RasterizerError
from .gs_types import RenderMode, RenderOutput
from .model import GaussianModel

logger = logging.getLogger("mcmc_gs.rendering")


class Rasterizer(ABC):
    """Differentiable renderer for a GaussianModel."""

    @abstractmethod
    def render(
        self,
        camera: Camera,
        model: GaussianModel,
        background: torch.Tensor,
        scaling_modifier: float = 1.0,
        opacity_only: bool = False,
        antialiasing: bool = False,
        mode: RenderMode = RenderMode.RGB,
    ) -> RenderOutput:
        """
        Render one camera.

        Args:
            camera: Camera to render from
            model: Splats to render (gradients flow into its parameters)
            background: [3] background color
            scaling_modifier: Multiplier applied to the activated scales
            opacity_only: Render accumulated opacity as a white-on-background image
            antialiasing: Use the antialiased (mip) rasterization mode
            mode: Which buffers to produce

        Returns:
            RenderOutput with image [H, W, 3], alpha [H, W, 1] and per-splat info
        """


class GsplatRasterizer(Rasterizer):
    """Rasterizer backed by `gsplat.rasterization`."""

    def __init__(self, packed: bool = False):
        self.packed = packed

    def render(
        self,
        camera: Camera,
        model: GaussianModel,
        background: torch.Tensor,
        scaling_modifier: float = 1.0,
        opacity_only: bool = False,
        antialiasing: bool = False,
        mode: RenderMode = RenderMode.RGB,
    ) -> RenderOutput:
        from gsplat import rasterization

        device = model.device
        n = model.size()
        if opacity_only:
            colors = torch.ones(n, 3, device=device)
            sh_degree = None
        else:
            colors = model.sh
            sh_degree = model.active_sh_degree

        try:
            render_colors, render_alpha, meta = rasterization(
                means=model.means,  # [N, 3]
                quats=model.quats,  # [N, 4]
                scales=model.scales * scaling_modifier,  # [N, 3]
                opacities=model.opacities.squeeze(-1),  # [N]
                colors=colors,  # [N, K, 3] or [N, 3]
                viewmats=camera.viewmat(device)[None],  # [1, 4, 4]
                Ks=camera.K(device)[None],  # [1, 3, 3]
                width=camera.width,
                height=camera.height,
                sh_degree=sh_degree,
                backgrounds=background.to(device)[None],
                packed=self.packed,
                rasterize_mode="antialiased" if antialiasing else "classic",
                render_mode=RenderMode(mode).value,
            )
        except RuntimeError as e:
            raise RasterizerError(f"Rasterization failed for camera '{camera.image_name}': {e}") from e

        out = render_colors[0]  # [H, W, C]
        mode = RenderMode(mode)
        depth = None
        if mode in (RenderMode.D, RenderMode.ED):
            image = out[..., :1].expand(-1, -1, 3)
            depth = out[..., 0]
        elif mode in (RenderMode.RGB_D, RenderMode.RGB_ED):
            image = out[..., :3]
            depth = out[..., 3]
        else:
            image = out[..., :3]

        meta["width"] = camera.width
        meta["height"] = camera.height
        meta["n_cameras"] = 1
        return RenderOutput(image=image, alpha=render_alpha[0], depth=depth, info=meta)


def render_or_raise(
    rasterizer: Rasterizer,
    camera: Camera,
    model: GaussianModel,
    background: torch.Tensor,
    antialiasing: bool = False,
    scaling_modifier: float = 1.0,
    mode: RenderMode = RenderMode.RGB,
    check_finite: bool = True,
) -> RenderOutput:
    """Render and turn non-finite output into a RasterizerError."""
    out = rasterizer.render(
        camera, model, background,
        scaling_modifier=scaling_modifier,
        opacity_only=False,
        antialiasing=antialiasing,
        mode=mode,
    )
    if check_finite and not torch.isfinite(out.image).all():
        raise RasterizerError(f"Rasterizer produced non-finite pixels for camera '{camera.image_name}'")
    return out
