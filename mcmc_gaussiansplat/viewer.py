"""
Live nerfview/viser viewer.

The viewer renders from `GaussianModel.snapshot()`, a copy taken under the
model's structural lock, so it never sees a half-applied add/remove while
the training thread keeps running.
"""
import logging
import threading
import time
from typing import Optional

import numpy as np
import torch

from .dataset import camera_from_c2w
from .errors import ConfigError
from .model import GaussianModel
from .rendering import GsplatRasterizer, Rasterizer

try:
    import nerfview
    import viser
    VIEWER_AVAILABLE = True
except ImportError:
    VIEWER_AVAILABLE = False

logger = logging.getLogger("mcmc_gs.viewer")


def snapshot_model(model: GaussianModel) -> GaussianModel:
    """Detached, lock-consistent copy of `model` that is safe to render from another thread."""
    snap = model.snapshot()
    return GaussianModel(
        **snap,
        sh_degree=model.sh_degree,
        active_sh_degree=model.active_sh_degree,
    )


def create_viewer_render_fn(model: GaussianModel, rasterizer: Optional[Rasterizer] = None, background=None,
                            antialiasing: bool = False):
    """
    Create a render function for the nerfview viewer.

    Args:
        model: GaussianModel being trained (or loaded)
        rasterizer: Rasterizer to render with (default: gsplat)
        background: Optional [3] background color
        antialiasing: Render with the antialiased rasterization mode

    Returns:
        Callable render function for viewer
    """
    rasterizer = rasterizer or GsplatRasterizer()

    def render_fn(camera_state, render_tab_state):
        """Callable function for the viewer."""
        if render_tab_state.preview_render:
            W = render_tab_state.render_width
            H = render_tab_state.render_height
        else:
            W = render_tab_state.viewer_width
            H = render_tab_state.viewer_height
        K = camera_state.get_K((W, H))
        camera = camera_from_c2w(camera_state.c2w, K, W, H, image_name="viewer")

        with torch.no_grad():
            view_model = snapshot_model(model)
            bg = background if background is not None else torch.zeros(3)
            try:
                out = rasterizer.render(camera, view_model, bg.to(view_model.device), antialiasing=antialiasing)
            except RuntimeError as e:
                logger.debug(f"[dim]Viewer render failed: {e}[/dim]")
                return np.zeros((H, W, 3), dtype=np.uint8)
            render_rgb = torch.clamp(out.image, 0, 1)
            return (render_rgb.cpu().numpy() * 255).astype(np.uint8)

    return render_fn


class TrainingViewer:
    """
    Thin wrapper around `nerfview.Viewer` exposing the hooks the trainer calls.
    """

    def __init__(self, model: GaussianModel, port: int = 8080, mode: str = "training",
                 rasterizer: Optional[Rasterizer] = None, background=None, antialiasing: bool = False):
        if not VIEWER_AVAILABLE:
            raise ConfigError("nerfview/viser are not installed. Install with: pip install nerfview viser")
        self.server = viser.ViserServer(port=port, verbose=False)
        self.viewer = nerfview.Viewer(
            server=self.server,
            render_fn=create_viewer_render_fn(model, rasterizer, background, antialiasing=antialiasing),
            mode=mode,
        )
        self.port = port
        logger.info(f"[green]📺 Viewer started:[/green] http://localhost:{port}")

    def wait_if_paused(self, stop_event: threading.Event):
        while self.viewer.state == "paused" and not stop_event.is_set():
            time.sleep(0.01)

    def update(self, step: int, num_rays: int, step_time: float):
        steps_per_sec = 1.0 / max(step_time, 1e-10)
        render_tab_state = getattr(self.viewer, "render_tab_state", None)
        if render_tab_state is not None:
            render_tab_state.num_train_rays_per_sec = num_rays * steps_per_sec
        self.viewer.update(step, num_rays)

    def complete(self):
        self.viewer.complete()
        logger.info("[green]✓ Training complete.[/green] Viewer remains active for inspection.")


def serve_forever(stop_event: Optional[threading.Event] = None):
    """Block the calling thread until Ctrl+C (or `stop_event`)."""
    stop_event = stop_event or threading.Event()
    logger.info("[blue]📺 Viewer running...[/blue] Press Ctrl+C to exit.")
    try:
        while not stop_event.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("[yellow]Viewer closed.[/yellow]")
