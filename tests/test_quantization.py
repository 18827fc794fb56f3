import numpy as np

from warp_splats.quantization import (
    QuantizationPair,
    build_covariances,
    dequantize,
    dequantize_features,
    dequantize_opacities,
    dequantize_rotations,
    dequantize_scales,
)


def test_dequantize_is_affine_in_the_code():
    codes = np.array([-128, 0, 127], dtype=np.int8)
    values = dequantize(codes, QuantizationPair(scale=0.5, zero_point=-3))
    np.testing.assert_array_equal(values, [-62.5, 1.5, 65.0])
    assert values.dtype == np.float32


def test_rotations_are_unit_quaternions():
    codes = np.array([[10, 0, 0, 0], [5, 5, 5, 5], [0, 0, -20, 0]], dtype=np.int8)
    rotations = dequantize_rotations(codes, QuantizationPair(0.1, 0))
    np.testing.assert_allclose(np.linalg.norm(rotations, axis=1), 1.0, rtol=1e-6)
    np.testing.assert_allclose(rotations[0], [1.0, 0.0, 0.0, 0.0])
    np.testing.assert_allclose(rotations[2], [0.0, 0.0, -1.0, 0.0])


def test_scales_are_exponentiated():
    codes = np.array([[0, 10, -10]], dtype=np.int8)
    scales = dequantize_scales(codes, QuantizationPair(0.1, 0))
    np.testing.assert_allclose(scales, np.exp([[0.0, 1.0, -1.0]]), rtol=1e-6)


def test_scale_factor_rescales_the_normalized_vector():
    codes = np.array([[0, 10, -10], [3, 4, 0]], dtype=np.int8)
    factor_codes = np.array([5, -5], dtype=np.int8)
    scales = dequantize_scales(codes, QuantizationPair(0.1, 0), factor_codes, QuantizationPair(0.2, 0))
    np.testing.assert_allclose(np.linalg.norm(scales, axis=1), np.exp([1.0, -1.0]), rtol=1e-5)

    unscaled = dequantize_scales(codes, QuantizationPair(0.1, 0))
    direction = unscaled / np.linalg.norm(unscaled, axis=1, keepdims=True)
    np.testing.assert_allclose(scales / np.linalg.norm(scales, axis=1, keepdims=True), direction, rtol=1e-5)


def test_zero_factor_scale_disables_the_factor_table():
    codes = np.array([[1, 2, 3]], dtype=np.int8)
    with_factor = dequantize_scales(codes, QuantizationPair(0.1, 0), np.array([50], dtype=np.int8),
                                    QuantizationPair(0.0, 0))
    np.testing.assert_array_equal(with_factor, dequantize_scales(codes, QuantizationPair(0.1, 0)))


def test_opacities_are_not_clamped():
    opacities = dequantize_opacities(np.array([-100, 0, 100], dtype=np.int8), QuantizationPair(0.02, 0))
    np.testing.assert_allclose(opacities, [-2.0, 0.0, 2.0], rtol=1e-6)


def test_features_keep_coefficient_layout():
    codes = np.arange(2 * 4 * 3, dtype=np.int8).reshape(2, 4, 3)
    features = dequantize_features(codes, QuantizationPair(0.5, 1))
    assert features.shape == (2, 4, 3)
    assert features[1, 3, 2] == (23 - 1) * 0.5


def test_covariance_of_axis_aligned_scales():
    cov = build_covariances([[1.0, 2.0, 3.0]], [[1.0, 0.0, 0.0, 0.0]])
    np.testing.assert_allclose(cov[0], [1.0, 0.0, 0.0, 4.0, 0.0, 9.0], atol=1e-5)


def test_covariance_follows_rotation():
    # 90 degrees about z swaps the x and y extents
    s = np.sqrt(0.5)
    cov = build_covariances([[1.0, 2.0, 3.0]], [[s, 0.0, 0.0, s]], scale_modifier=2.0)
    np.testing.assert_allclose(cov[0], [16.0, 0.0, 0.0, 4.0, 0.0, 36.0], atol=1e-4)
