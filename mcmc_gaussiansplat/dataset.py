import logging
import os
from dataclasses import dataclass
from typing import List, Tuple

import imageio.v2 as imageio
import numpy as np
import pycolmap
import torch
import torch.nn.functional as F
from scipy.spatial.transform import Rotation
from torch.utils.data import Dataset

from .errors import ConfigError, DatasetEntryError, DatasetError

# Module-level logger
logger = logging.getLogger("mcmc_gs.dataset")


@dataclass
class Camera:
    """Pinhole camera with world-to-camera extrinsics."""
    R: torch.Tensor  # [3, 3] world-to-camera rotation
    T: torch.Tensor  # [3] world-to-camera translation
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    image_name: str = ""
    image_path: str = ""
    uid: int = 0

    def viewmat(self, device=None) -> torch.Tensor:
        viewmat = torch.eye(4, dtype=torch.float32, device=device)
        viewmat[:3, :3] = self.R.to(device)
        viewmat[:3, 3] = self.T.to(device)
        return viewmat

    def K(self, device=None) -> torch.Tensor:
        return torch.tensor(
            [[self.fx, 0, self.cx],
             [0, self.fy, self.cy],
             [0., 0., 1.]],
            dtype=torch.float32,
            device=device,
        )

    @property
    def center(self) -> torch.Tensor:
        # C = -R^T T
        return -self.R.T @ self.T

    def scaled(self, factor: int) -> "Camera":
        if factor == 1:
            return self
        return Camera(
            R=self.R, T=self.T,
            fx=self.fx / factor, fy=self.fy / factor,
            cx=self.cx / factor, cy=self.cy / factor,
            width=self.width // factor, height=self.height // factor,
            image_name=self.image_name, image_path=self.image_path, uid=self.uid,
        )


def camera_from_c2w(c2w, K, width: int, height: int, image_name: str = "", uid: int = 0) -> Camera:
    """Pinhole camera from a camera-to-world matrix [4, 4] and intrinsics K [3, 3]."""
    c2w = np.asarray(c2w, dtype=np.float64)
    K = np.asarray(K, dtype=np.float64)
    viewmat = np.linalg.inv(c2w)
    return Camera(
        R=torch.from_numpy(viewmat[:3, :3]).float(),
        T=torch.from_numpy(viewmat[:3, 3]).float(),
        fx=float(K[0, 0]), fy=float(K[1, 1]),
        cx=float(K[0, 2]), cy=float(K[1, 2]),
        width=int(width), height=int(height),
        image_name=image_name, uid=uid,
    )


def _intrinsics(model_name: str, params, width: int, height: int):
    if model_name == 'SIMPLE_PINHOLE':  # f, cx, cy
        fx = fy = params[0]
        cx, cy = params[1], params[2]
    elif model_name == 'SIMPLE_RADIAL':  # f, cx, cy, k
        fx = fy = params[0]
        cx, cy = params[1], params[2]
    elif model_name in ('PINHOLE', 'RADIAL', 'OPENCV'):  # fx, fy, cx, cy, ...
        fx, fy, cx, cy = params[0], params[1], params[2], params[3]
    else:
        raise ValueError(f"unsupported camera model {model_name}")
    if fx <= 0 or fy <= 0 or width <= 0 or height <= 0:
        raise ValueError(f"degenerate intrinsics fx={fx} fy={fy} size={width}x{height}")
    return float(fx), float(fy), float(cx), float(cy)


def compute_scene_normalization(cameras: List[Camera]) -> Tuple[torch.Tensor, float]:
    """
    Scene center and extent from camera positions.

    Returns:
        (center [3], scale) where scale is 1.1 x the largest camera distance to the center
    """
    centers = torch.stack([cam.center for cam in cameras])
    center = centers.mean(dim=0)
    radius = torch.linalg.norm(centers - center, dim=1).max().item()
    return center, max(radius * 1.1, 1e-6)


class ColmapDataset(Dataset):
    """
    Posed images from a COLMAP sparse reconstruction.

    Items are ``(Camera, image)`` with images as float [H, W, 3] tensors in [0, 1].
    Entries with a missing image file or an unusable camera are skipped with a
    warning. With ``test_every > 0`` every n-th image is held out: ``split="train"``
    returns the rest, ``split="test"`` the held-out views.
    """

    def __init__(
        self,
        colmap_path,
        image_dir,
        split: str = "train",
        test_every: int = 8,
        downscale: int = 1,
        device='cpu',
        preload: bool = False,
    ):
        if split not in ("train", "test", "all"):
            raise ConfigError(f"Unknown split '{split}'")
        if not os.path.isdir(colmap_path):
            raise ConfigError(f"COLMAP path does not exist: {colmap_path}")
        if not os.path.isdir(image_dir):
            raise ConfigError(f"Image directory does not exist: {image_dir}")
        self.device = device
        self.downscale = downscale
        self._preloaded_images = None

        # pycolmap handles the binary/text parsing automatically
        try:
            recon = pycolmap.Reconstruction(str(colmap_path))
        except (RuntimeError, ValueError) as e:
            raise DatasetError(f"Failed to read COLMAP reconstruction at {colmap_path}: {e}") from e

        # Point cloud for initialization: XYZ and RGB in [0, 1]
        xyz = []
        rgb = []
        for p in recon.points3D.values():
            xyz.append(p.xyz)
            rgb.append(p.color)
        if len(xyz) == 0:
            raise DatasetError(f"No 3D points found in COLMAP reconstruction at {colmap_path}")
        self.init_points = torch.tensor(np.array(xyz), dtype=torch.float32)
        self.init_colors = torch.tensor(np.array(rgb), dtype=torch.float32) / 255.0

        # Cameras, sorted by name so the ordering (and the split) is stable
        all_cameras = []
        for img_id, img in sorted(recon.images.items(), key=lambda kv: kv[1].name):
            img_path = os.path.join(image_dir, img.name)
            if not os.path.exists(img_path):
                logger.warning(f"[yellow]⚠ Skipping {img.name}:[/yellow] image file not found")
                continue
            cam = recon.cameras[img.camera_id]
            try:
                fx, fy, cx, cy = _intrinsics(cam.model.name, cam.params, cam.width, cam.height)
            except (ValueError, IndexError) as e:
                logger.warning(f"[yellow]⚠ Skipping {img.name}:[/yellow] {e}")
                continue

            # World-to-camera extrinsics; pycolmap quaternions are (x, y, z, w)
            cam_from_world = img.cam_from_world() if callable(img.cam_from_world) else img.cam_from_world
            quat = cam_from_world.rotation.quat
            R = torch.tensor(Rotation.from_quat(quat).as_matrix(), dtype=torch.float32)
            T = torch.tensor(np.asarray(cam_from_world.translation), dtype=torch.float32)

            all_cameras.append(Camera(
                R=R, T=T, fx=fx, fy=fy, cx=cx, cy=cy,
                width=cam.width, height=cam.height,
                image_name=img.name, image_path=img_path, uid=len(all_cameras),
            ).scaled(downscale))

        if len(all_cameras) == 0:
            raise DatasetError(f"No usable cameras in {colmap_path} (images in {image_dir})")

        self.scene_center, self.scene_scale = compute_scene_normalization(all_cameras)

        if split == "all" or test_every <= 0:
            self.cameras = all_cameras if split != "test" else []
        elif split == "train":
            self.cameras = [c for i, c in enumerate(all_cameras) if i % test_every != 0]
        else:
            self.cameras = [c for i, c in enumerate(all_cameras) if i % test_every == 0]

        logger.info(
            f"[green]✓ Loaded {len(self.cameras)} {split} cameras[/green] "
            f"[dim]({len(all_cameras)} usable, {len(recon.images)} in reconstruction)[/dim]"
        )
        if preload:
            self.preload_all_images()

    def __len__(self):
        return len(self.cameras)

    def _read_image(self, idx: int) -> torch.Tensor:
        cam = self.cameras[idx]
        try:
            img = imageio.imread(cam.image_path)
        except (OSError, ValueError) as e:
            raise DatasetEntryError(idx, f"Failed to decode {cam.image_path}: {e}") from e
        if img.ndim == 2:
            img = np.stack([img] * 3, axis=-1)
        img_tensor = torch.from_numpy(np.ascontiguousarray(img[..., :3])).float() / 255.0
        if self.downscale > 1:
            img_tensor = F.interpolate(
                img_tensor.permute(2, 0, 1).unsqueeze(0),
                size=(cam.height, cam.width),
                mode="area",
            )[0].permute(1, 2, 0)
        if img_tensor.shape[:2] != (cam.height, cam.width):
            raise DatasetEntryError(
                idx,
                f"Image {cam.image_name} is {tuple(img_tensor.shape[:2])}, "
                f"camera expects {(cam.height, cam.width)}",
            )
        return img_tensor

    def __getitem__(self, idx):
        cam = self.cameras[idx]
        if self._preloaded_images is not None:
            return cam, self._preloaded_images[idx]
        return cam, self._read_image(idx).to(self.device)

    def preload_all_images(self):
        """Pre-load all images into memory for faster training."""
        self._preloaded_images = [self._read_image(i).to(self.device) for i in range(len(self))]
