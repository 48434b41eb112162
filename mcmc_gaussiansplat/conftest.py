"""
Shared pytest fixtures.

`SoftSplatRasterizer` is a tiny differentiable pure-torch stand-in for the
CUDA rasterizer: isotropic screen-space Gaussians blended by normalized
weights. It returns the same auxiliary buffers gsplat does (`means2d` on the
autograd graph, `radii`, viewport size), so the trainer and strategy run
end to end on CPU.
"""
import math

import pytest
import torch

from .dataset import Camera, compute_scene_normalization
from .errors import DatasetEntryError
from .gs_types import RenderMode, RenderOutput
from .model import GaussianModel
from .rendering import Rasterizer
from .utils import SH_C0

IMAGE_SIZE = 24


class SoftSplatRasterizer(Rasterizer):
    def __init__(self):
        self.calls = 0

    def render(self, camera, model, background, scaling_modifier=1.0, opacity_only=False,
               antialiasing=False, mode=RenderMode.RGB):
        self.calls += 1
        device = model.device
        W, H = camera.width, camera.height
        viewmat = camera.viewmat(device)
        K = camera.K(device)

        cam_pts = model.means @ viewmat[:3, :3].T + viewmat[:3, 3]
        in_front = cam_pts[:, 2] > 0.01
        z = cam_pts[:, 2].clamp_min(0.01)
        means2d = torch.stack([
            K[0, 0] * cam_pts[:, 0] / z + K[0, 2],
            K[1, 1] * cam_pts[:, 1] / z + K[1, 2],
        ], dim=-1).unsqueeze(0)  # [1, N, 2]

        sigma = (K[0, 0] * model.scales.mean(dim=-1) * scaling_modifier / z).clamp(0.3, float(max(W, H)))
        radii = torch.where(in_front, torch.ceil(3 * sigma.detach()), torch.zeros_like(sigma)).int().unsqueeze(0)

        ys, xs = torch.meshgrid(
            torch.arange(H, device=device, dtype=torch.float32) + 0.5,
            torch.arange(W, device=device, dtype=torch.float32) + 0.5,
            indexing="ij",
        )
        uv = means2d[0]
        d2 = (xs[None] - uv[:, 0, None, None]) ** 2 + (ys[None] - uv[:, 1, None, None]) ** 2  # [N, H, W]
        weights = model.opacities * in_front.float().unsqueeze(-1)  # [N, 1]
        w = weights[:, :, None] * torch.exp(-0.5 * d2 / sigma[:, None, None] ** 2)  # [N, H, W]

        if opacity_only:
            colors = torch.ones(model.size(), 3, device=device)
        else:
            colors = model.sh[:, 0, :] * SH_C0 + 0.5  # DC band only
        w_sum = w.sum(dim=0)  # [H, W]
        rgb = torch.einsum("nhw,nc->hwc", w, colors) / (w_sum[..., None] + 1e-6)
        alpha = (1.0 - torch.exp(-w_sum)).unsqueeze(-1)  # [H, W, 1]
        image = rgb * alpha + (1.0 - alpha) * background.to(device)

        info = {"means2d": means2d, "radii": radii, "width": W, "height": H, "n_cameras": 1}
        return RenderOutput(image=image, alpha=alpha, info=info)


def look_at_camera(position, uid: int, size: int = IMAGE_SIZE) -> Camera:
    c = torch.tensor(position, dtype=torch.float32)
    z = -c / c.norm()
    up = torch.tensor([0.0, 0.0, 1.0])
    x = torch.linalg.cross(z, up)
    x = x / x.norm()
    y = torch.linalg.cross(z, x)
    R = torch.stack([x, y, z])
    return Camera(
        R=R, T=-R @ c,
        fx=2.0 * size, fy=2.0 * size, cx=size / 2, cy=size / 2,
        width=size, height=size,
        image_name=f"view_{uid:03d}.png", uid=uid,
    )


def make_cameras(n: int, radius: float = 3.0):
    return [
        look_at_camera(
            (radius * math.cos(2 * math.pi * i / n), radius * math.sin(2 * math.pi * i / n), 0.6), uid=i
        )
        for i in range(n)
    ]


class SyntheticDataset:
    """In-memory posed images with the attributes the trainer reads from ColmapDataset."""

    def __init__(self, cameras, images, init_points, init_colors, corrupt=()):
        self.cameras = cameras
        self.images = images
        self.init_points = init_points
        self.init_colors = init_colors
        self.corrupt = set(corrupt)
        self.scene_center, self.scene_scale = compute_scene_normalization(cameras)

    def __len__(self):
        return len(self.cameras)

    def __getitem__(self, idx):
        if idx in self.corrupt:
            raise DatasetEntryError(idx, f"Failed to decode {self.cameras[idx].image_name}")
        return self.cameras[idx], self.images[idx]


def random_model(n: int, seed: int = 0, sh_degree: int = 1, opacity: float = 0.5) -> GaussianModel:
    g = torch.Generator().manual_seed(seed)
    points = torch.rand(n, 3, generator=g) - 0.5
    colors = torch.rand(n, 3, generator=g)
    return GaussianModel.from_point_cloud(points, colors, sh_degree=sh_degree, init_opacity=opacity)


@pytest.fixture
def rasterizer():
    return SoftSplatRasterizer()


@pytest.fixture
def scene():
    """Eight training views rendered from a fixed ground-truth model."""
    g = torch.Generator().manual_seed(1234)
    cameras = make_cameras(8)
    gt_model = random_model(150, seed=99, sh_degree=0, opacity=0.8)
    background = torch.zeros(3)
    with torch.no_grad():
        images = [SoftSplatRasterizer().render(cam, gt_model, background).image.clamp(0, 1) for cam in cameras]
    init_points = torch.rand(120, 3, generator=g) - 0.5
    init_colors = torch.rand(120, 3, generator=g)
    return SyntheticDataset(cameras, images, init_points, init_colors)


@pytest.fixture
def small_model():
    return random_model(64, seed=3)


@pytest.fixture
def train_config(tmp_path):
    from .config import TrainingConfig
    return TrainingConfig(
        output_dir=str(tmp_path / "run"),
        device="cpu",
        iterations=40,
        seed=7,
        sh_degree=1,
        sh_degree_interval=20,
        max_splats=200,
        refine_start_iter=10,
        refine_stop_iter=35,
        refine_every=5,
        save_steps=[20],
        eval_steps=[],
        log_interval=10,
        enable_tensorboard=False,
        verbosity=0,
    ).validate(require_data=False)
