import numpy as np
import pytest
import warp as wp

from warp_splats.config import ConfigurationError, SHEncoding
from warp_splats.point_cloud import PointCloud, pack_covariances, pack_positions
from warp_splats.quantization import QuantizationPair
from warp_splats.sh import decode_sh_table
from warp_splats.utils.packing import unpack_half2x16


def identity_gaussians(n, degree=1):
    positions = np.linspace(-1.0, 1.0, n * 3, dtype=np.float32).reshape(n, 3)
    opacities = np.full(n, 0.5, dtype=np.float32)
    scales = np.full((n, 3), 0.5, dtype=np.float32)
    rotations = np.tile(np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32), (n, 1))
    sh = np.zeros((n, (degree + 1) ** 2, 3), dtype=np.float32)
    sh[:, 0] = 0.25
    return positions, opacities, scales, rotations, sh


def test_position_words_layout():
    words = pack_positions([[1.0, -2.0, 0.5]], [0.25])
    x, y = unpack_half2x16(words[:, 0])
    z, opacity = unpack_half2x16(words[:, 1])
    assert (x[0], y[0], z[0], opacity[0]) == (1.0, -2.0, 0.5, 0.25)


def test_covariance_words_layout():
    words = pack_covariances([[1.0, 2.0, 3.0, 4.0, 5.0, 6.0]])
    assert words.shape == (1, 4)
    assert words[0, 3] == 0
    lo, hi = unpack_half2x16(words[0, :3])
    np.testing.assert_array_equal(lo, [1.0, 3.0, 5.0])
    np.testing.assert_array_equal(hi, [2.0, 4.0, 6.0])


@pytest.mark.parametrize("encoding", ["float", "half", "byte"])
def test_from_gaussians(encoding):
    cloud = PointCloud.from_gaussians(*identity_gaussians(5), sh_encoding=encoding)
    assert cloud.num_points == 5
    assert cloud.num_geometries == 5
    assert cloud.sh_degree == 1
    assert cloud.sh_encoding == SHEncoding.parse(encoding)
    assert cloud.num_sh_entries == 5
    decoded = decode_sh_table(cloud.sh_table, encoding, 1)
    np.testing.assert_allclose(decoded[:, 0], 0.25, atol=0.02)

    lo, hi = unpack_half2x16(cloud.covariances[:, 0])
    np.testing.assert_allclose(lo, 0.25)
    np.testing.assert_allclose(hi, 0.0, atol=1e-6)


def test_max_degree_truncates_coefficients():
    positions, opacities, scales, rotations, sh = identity_gaussians(3, degree=3)
    cloud = PointCloud.from_gaussians(positions, opacities, scales, rotations, sh, max_sh_degree=1)
    assert cloud.sh_degree == 1
    assert cloud.sh_table.size == 3 * 12

    with pytest.raises(ValueError):
        PointCloud.from_gaussians(*identity_gaussians(3, degree=0), max_sh_degree=2)


def test_unknown_encoding_is_rejected():
    with pytest.raises(ConfigurationError):
        PointCloud.from_gaussians(*identity_gaussians(2), sh_encoding="bf16")


def test_indices_are_validated():
    positions, opacities, scales, rotations, sh = identity_gaussians(2)
    covariances = np.zeros((1, 6), dtype=np.float32)
    with pytest.raises(ValueError):
        PointCloud.from_covariances(positions, opacities, covariances, sh, geometry_idx=[0, 1])
    with pytest.raises(ValueError):
        PointCloud.from_covariances(positions, opacities, covariances, sh[:1], geometry_idx=[0, 0], sh_idx=[0, 1])
    with pytest.raises(ValueError):
        PointCloud.from_covariances(positions, opacities, covariances, sh, geometry_idx=[0])


def test_from_quantized_shares_tables_by_index():
    positions = np.zeros((4, 3), dtype=np.float32)
    cloud = PointCloud.from_quantized(
        positions,
        geometry_idx=[0, 1, 1, 0],
        sh_idx=[2, 2, 0, 1],
        opacity_codes=np.array([127, 64, 0, -10], dtype=np.int8),
        opacity_pair=QuantizationPair(1.0 / 127, 0),
        scale_codes=np.array([[0, 0, 0], [10, 10, 10]], dtype=np.int8),
        scale_pair=QuantizationPair(0.1, 0),
        rotation_codes=np.array([[100, 0, 0, 0], [0, 0, 0, 100]], dtype=np.int8),
        rotation_pair=QuantizationPair(0.01, 0),
        feature_codes=np.zeros((3, 4, 3), dtype=np.int8),
        feature_pair=QuantizationPair(0.01, 0),
        max_sh_degree=1,
    )
    assert cloud.num_points == 4
    assert cloud.num_geometries == 2
    assert cloud.num_sh_entries == 3
    assert cloud.sh_encoding == SHEncoding.BYTE

    xx, _ = unpack_half2x16(cloud.covariances[:, 0])
    np.testing.assert_allclose(xx, [1.0, np.exp(2.0)], rtol=1e-3)
    _, opacity = unpack_half2x16(cloud.pos_opacity[:, 1])
    np.testing.assert_allclose(opacity, [1.0, 64 / 127, 0.0, -10 / 127], atol=1e-3)


def test_to_device():
    cloud = PointCloud.from_gaussians(*identity_gaussians(3), sh_encoding="half")
    splats, sh_table = cloud.to_device()
    assert splats.pos_opacity.shape == (3, 2)
    assert splats.covariances.shape == (3, 4)
    assert splats.geometry_idx.dtype == wp.int32
    assert sh_table.dtype == wp.uint32
    assert sh_table.shape == (3 * cloud.sh_stride,)


def quantized_cloud(feature_codes, sh_encoding):
    return PointCloud.from_quantized(
        np.zeros((2, 3), dtype=np.float32),
        geometry_idx=[0, 0],
        sh_idx=[0, 0],
        opacity_codes=np.array([100, 100], dtype=np.int8),
        opacity_pair=QuantizationPair(0.01, 0),
        scale_codes=np.zeros((1, 3), dtype=np.int8),
        scale_pair=QuantizationPair(0.1, 0),
        rotation_codes=np.array([[100, 0, 0, 0]], dtype=np.int8),
        rotation_pair=QuantizationPair(0.01, 0),
        feature_codes=feature_codes,
        feature_pair=QuantizationPair(0.05, 0),
        sh_encoding=sh_encoding,
    )


def test_from_quantized_keeps_out_of_range_features():
    feature_codes = np.full((1, 4, 3), 100, dtype=np.int8)
    cloud = quantized_cloud(feature_codes, "float")
    np.testing.assert_allclose(decode_sh_table(cloud.sh_table, "float", 1), 5.0, rtol=1e-6)

    # the byte table cannot hold 5.0
    with pytest.raises(ValueError):
        quantized_cloud(feature_codes, "byte")


def test_from_quantized_byte_table_in_range():
    feature_codes = np.full((1, 4, 3), 8, dtype=np.int8)
    cloud = quantized_cloud(feature_codes, "byte")
    np.testing.assert_allclose(decode_sh_table(cloud.sh_table, "byte", 1), 0.4, atol=0.5 / 127)
