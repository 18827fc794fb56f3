import numpy as np
import pytest
from plyfile import PlyData

from warp_splats.sh import decode_sh_table
from warp_splats.utils.packing import unpack_half2x16
from warp_splats.utils.point_cloud_utils import load_ply, read_ply_gaussians, save_ply


@pytest.fixture
def gaussians():
    rng = np.random.default_rng(0)
    n = 6
    rotations = rng.normal(size=(n, 4)).astype(np.float32)
    rotations /= np.linalg.norm(rotations, axis=1, keepdims=True)
    return {
        'positions': rng.uniform(-1.0, 1.0, size=(n, 3)).astype(np.float32),
        'scales': rng.uniform(0.05, 0.5, size=(n, 3)).astype(np.float32),
        'rotations': rotations,
        'opacities': rng.uniform(0.1, 0.9, size=n).astype(np.float32),
        'sh_coeffs': rng.uniform(-0.4, 0.4, size=(n, 16, 3)).astype(np.float32),
    }


def test_save_then_read_restores_activated_attributes(tmp_path, gaussians):
    path = str(tmp_path / "scene" / "point_cloud.ply")
    save_ply(path, **gaussians)
    loaded = read_ply_gaussians(path)
    for key in ('positions', 'scales', 'rotations', 'opacities', 'sh_coeffs'):
        np.testing.assert_allclose(loaded[key], gaussians[key], rtol=1e-5, atol=1e-6)


def test_rest_coefficients_are_channel_major(tmp_path, gaussians):
    path = str(tmp_path / "point_cloud.ply")
    save_ply(path, **gaussians)
    vertices = PlyData.read(path)['vertex']
    # f_rest_0..14 are the red channel of coefficients 1..15
    np.testing.assert_allclose(vertices['f_rest_0'], gaussians['sh_coeffs'][:, 1, 0])
    np.testing.assert_allclose(vertices['f_rest_15'], gaussians['sh_coeffs'][:, 1, 1])
    np.testing.assert_allclose(vertices['f_rest_14'], gaussians['sh_coeffs'][:, 15, 0])


def test_load_ply_builds_a_cloud(tmp_path, gaussians):
    path = str(tmp_path / "point_cloud.ply")
    save_ply(path, **gaussians)
    cloud = load_ply(path, max_sh_degree=1, sh_encoding="half")
    assert cloud.num_points == 6
    assert cloud.sh_degree == 1

    decoded = decode_sh_table(cloud.sh_table, "half", 1)
    np.testing.assert_allclose(decoded, gaussians['sh_coeffs'][:, :4], atol=1e-3)
    _, opacity = unpack_half2x16(cloud.pos_opacity[:, 1])
    np.testing.assert_allclose(opacity, gaussians['opacities'], atol=1e-3)


def test_load_ply_caps_degree_at_stored_degree(tmp_path, gaussians):
    path = str(tmp_path / "point_cloud.ply")
    gaussians['sh_coeffs'] = gaussians['sh_coeffs'][:, :1]
    save_ply(path, **gaussians)
    cloud = load_ply(path, max_sh_degree=3)
    assert cloud.sh_degree == 0
