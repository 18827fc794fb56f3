import os

# kernels run on Warp's CPU backend under test
os.environ["WARP_SPLATS_DEVICE"] = "cpu"

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from warp_splats.config import RenderParams  # noqa: E402
from warp_splats.point_cloud import PointCloud  # noqa: E402
from warp_splats.utils.camera_utils import look_at, make_camera, perspective  # noqa: E402

WIDTH = 64
HEIGHT = 64
FOVY = 0.8
CAMERA_DISTANCE = 5.0


@pytest.fixture
def view_proj():
    view = look_at(position=(0.0, 0.0, CAMERA_DISTANCE), target=(0.0, 0.0, 0.0))
    proj = perspective(FOVY, WIDTH, HEIGHT)
    return view, proj


@pytest.fixture
def camera(view_proj):
    view, proj = view_proj
    return make_camera(view, proj, WIDTH, HEIGHT)


@pytest.fixture
def restore_render_params():
    saved = RenderParams.get_config_dict()
    yield
    RenderParams.update(**saved)


def make_cloud(positions, opacities=None, covariances=None, sh_coeffs=None, sh_encoding="float"):
    """Cloud of splats with identity covariance and a flat grey DC color by default."""
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    n = positions.shape[0]
    if opacities is None:
        opacities = np.full(n, 0.75, dtype=np.float32)
    if covariances is None:
        covariances = np.tile(np.array([1.0, 0.0, 0.0, 1.0, 0.0, 1.0], dtype=np.float32), (n, 1))
    if sh_coeffs is None:
        sh_coeffs = np.zeros((n, 1, 3), dtype=np.float32)
    return PointCloud.from_covariances(positions, opacities, covariances, sh_coeffs, sh_encoding=sh_encoding)


def clip_from_world(view, proj, positions):
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    homogeneous = np.concatenate([positions, np.ones((positions.shape[0], 1))], axis=1)
    return homogeneous @ (np.asarray(proj, np.float64) @ np.asarray(view, np.float64)).T
