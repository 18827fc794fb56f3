"""
Attribute dequantization for compressed splat datasets.

Compressed datasets store scale, rotation, opacity and SH features as signed
8-bit codes with one (scale, zero point) pair per table:

    value = (code - zero_point) * scale

Scales are stored in log space, rotations as unnormalized quaternions
(w, x, y, z). Nothing is clamped here: out-of-range codes give out-of-range
values and any saturation is left to the consumer.
"""
from collections import namedtuple

import numpy as np
import warp as wp

from warp_splats.config import DEVICE, VEC6
from warp_splats.utils.wp_utils import to_warp_array

QuantizationPair = namedtuple("QuantizationPair", ["scale", "zero_point"])


def dequantize(codes, pair):
    codes = np.asarray(codes).astype(np.float32)
    return (codes - np.float32(pair.zero_point)) * np.float32(pair.scale)


def dequantize_rotations(codes, pair):
    """Dequantize (N, 4) rotation codes into unit quaternions (w, x, y, z)."""
    rotations = dequantize(codes, pair).reshape(-1, 4)
    norms = np.linalg.norm(rotations, axis=1, keepdims=True)
    return rotations / norms


def dequantize_scales(codes, pair, factor_codes=None, factor_pair=None):
    """Dequantize (N, 3) log-scale codes.

    When a secondary factor table is configured (non-zero scale), each scale
    vector is normalized and rescaled by exp(dequantize(factor_code)).
    """
    scales = np.exp(dequantize(codes, pair).reshape(-1, 3))
    if factor_codes is not None and factor_pair is not None and factor_pair.scale != 0:
        factors = np.exp(dequantize(factor_codes, factor_pair).reshape(-1, 1))
        scales = scales / np.linalg.norm(scales, axis=1, keepdims=True) * factors
    return scales.astype(np.float32)


def dequantize_opacities(codes, pair):
    return dequantize(codes, pair).reshape(-1)


def dequantize_features(codes, pair):
    """Dequantize SH feature codes of shape (F, n_coeffs, 3)."""
    codes = np.asarray(codes)
    return dequantize(codes, pair).reshape(codes.shape[0], -1, 3)


@wp.func
def compute_cov3d(scale: wp.vec3, scale_mod: float, rot: wp.vec4) -> VEC6:
    """
    Build the 3D covariance of an ellipsoid: Sigma = R S S^T R^T.

    S is the diagonal scale matrix and R the rotation of the unit quaternion
    ``rot`` given as (w, x, y, z). Only the upper triangle is returned.
    """
    S = wp.mat33(
        scale_mod * scale[0], 0.0, 0.0,
        0.0, scale_mod * scale[1], 0.0,
        0.0, 0.0, scale_mod * scale[2]
    )
    R = wp.quat_to_matrix(wp.normalize(wp.quat(rot[1], rot[2], rot[3], rot[0])))
    M = R * S
    sigma = M * wp.transpose(M)
    return VEC6(sigma[0, 0], sigma[0, 1], sigma[0, 2], sigma[1, 1], sigma[1, 2], sigma[2, 2])


@wp.kernel
def wp_build_covariances(
    scales: wp.array(dtype=wp.vec3),      # Ellipsoid scales (G, 3)
    rotations: wp.array(dtype=wp.vec4),   # Quaternions (w, x, y, z) (G, 4)
    scale_modifier: float,                # Global scale multiplier
    cov3Ds: wp.array(dtype=VEC6),         # Output upper-triangular covariances (G, 6)
):
    i = wp.tid()
    cov3Ds[i] = compute_cov3d(scales[i], scale_modifier, rotations[i])


def build_covariances(scales, rotations, scale_modifier=1.0, device=None):
    """Compute (G, 6) covariances from (G, 3) scales and (G, 4) rotations."""
    device = device or DEVICE
    scales = np.asarray(scales, dtype=np.float32).reshape(-1, 3)
    rotations = np.asarray(rotations, dtype=np.float32).reshape(-1, 4)
    if scales.shape[0] != rotations.shape[0]:
        raise ValueError(f"{scales.shape[0]} scales but {rotations.shape[0]} rotations")

    count = scales.shape[0]
    cov3Ds = wp.zeros(count, dtype=VEC6, device=device)
    if count:
        wp.launch(
            kernel=wp_build_covariances,
            dim=count,
            inputs=[
                to_warp_array(scales, wp.vec3, device=device),
                to_warp_array(rotations, wp.vec4, device=device),
                float(scale_modifier),
                cov3Ds,
            ],
            device=device,
        )
    return cov3Ds.numpy().reshape(count, 6)
