"""
Render a trained model from cameras described in a JSON file.

The file holds either one camera object or an array of them::

    {
        "img_id": "frame_0001",
        "width": 1280, "height": 720,
        "intrinsics": [[fx, 0, cx], [0, fy, cy], [0, 0, 1]],
        "extrinsics": {"c2w_matrix": [[...], [...], [...], [0, 0, 0, 1]]}
    }

One PNG named ``<img_id>.png`` is written per usable camera.
"""
import json
import logging
from pathlib import Path
from typing import List, Optional, Union

import imageio.v2 as imageio
import numpy as np
import torch

from .dataset import Camera, camera_from_c2w
from .errors import ConfigError
from .model import GaussianModel
from .rendering import GsplatRasterizer, Rasterizer, render_or_raise

logger = logging.getLogger("mcmc_gs.render")


def load_json_cameras(path: Union[str, Path]) -> List[Camera]:
    """
    Parse a camera JSON file.

    Entries without intrinsics/extrinsics, or with a malformed matrix or
    non-positive image size, are skipped with a warning. Unnamed cameras are
    named after their position among the usable ones.

    Raises:
        ConfigError: If the file is missing, is not JSON, or is neither an object nor an array
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Camera JSON file not found: '{path}'")
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read camera JSON {path}: {e}") from e

    if isinstance(data, dict):
        entries = [data]
    elif isinstance(data, list):
        entries = data
    else:
        raise ConfigError(f"Camera JSON {path} must hold an object or an array of objects")

    cameras = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or "intrinsics" not in entry or "extrinsics" not in entry:
            logger.warning(f"[yellow]⚠ Skipping camera entry {i}:[/yellow] missing intrinsics or extrinsics")
            continue
        name = str(entry.get("img_id", len(cameras)))
        try:
            width = int(entry.get("width", 0))
            height = int(entry.get("height", 0))
            K = np.asarray(entry["intrinsics"], dtype=np.float64)
            c2w = np.asarray(entry["extrinsics"]["c2w_matrix"], dtype=np.float64)
            if K.shape != (3, 3) or c2w.shape != (4, 4):
                raise ValueError(f"expected 3x3 intrinsics and 4x4 c2w, got {K.shape} and {c2w.shape}")
            if width <= 0 or height <= 0:
                raise ValueError(f"invalid image size {width}x{height}")
            cameras.append(camera_from_c2w(c2w, K, width, height, image_name=name, uid=len(cameras)))
        except (KeyError, TypeError, ValueError, np.linalg.LinAlgError) as e:
            logger.warning(f"[yellow]⚠ Skipping camera '{name}':[/yellow] {e}")
    return cameras


def render_cameras(
    model: GaussianModel,
    cameras: List[Camera],
    output_dir: Union[str, Path],
    rasterizer: Optional[Rasterizer] = None,
    background: Optional[torch.Tensor] = None,
    antialiasing: bool = False,
) -> List[Path]:
    """Render every camera and write ``<image_name>.png`` into `output_dir`."""
    rasterizer = rasterizer or GsplatRasterizer()
    background = background if background is not None else torch.zeros(3)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    with torch.no_grad():
        for cam in cameras:
            out = render_or_raise(rasterizer, cam, model, background.to(model.device), antialiasing=antialiasing)
            image = (out.image.clamp(0, 1).cpu().numpy() * 255).astype(np.uint8)
            path = output_dir / f"{cam.image_name}.png"
            imageio.imwrite(path, image)
            logger.info(f"[green]✓ Saved[/green] {path}")
            written.append(path)
    return written


def render_from_json(
    ply_path: Union[str, Path],
    cameras_json: Union[str, Path],
    output_dir: Union[str, Path],
    device: str = "cpu",
    rasterizer: Optional[Rasterizer] = None,
    background: Optional[torch.Tensor] = None,
    antialiasing: bool = False,
) -> List[Path]:
    """Load a PLY model and render it from the cameras in `cameras_json`."""
    if not Path(ply_path).is_file():
        raise ConfigError(f"PLY file not found: '{ply_path}'")
    cameras = load_json_cameras(cameras_json)
    model = GaussianModel.load_ply(ply_path, device=device)
    return render_cameras(model, cameras, output_dir, rasterizer, background, antialiasing)
