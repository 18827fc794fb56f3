"""
Host-side splat datasets and their upload to the device.

A dataset is a structure of arrays:
- per splat: packed half position + opacity, geometry index, SH index
- a geometry table of packed half covariances, shared by index
- an SH table in one of the SHEncoding layouts, shared by index
"""
import numpy as np
import warp as wp
from loguru import logger

from warp_splats.config import DEVICE, SHEncoding, check_sh_degree, num_sh_coeffs
from warp_splats.quantization import (
    build_covariances,
    dequantize_features,
    dequantize_opacities,
    dequantize_rotations,
    dequantize_scales,
)
from warp_splats.sh import encode_sh_table, sh_table_dtype, sh_table_stride
from warp_splats.structures import PackedSplats
from warp_splats.utils.packing import pack_half2x16
from warp_splats.utils.wp_utils import to_warp_array


def pack_positions(positions, opacities):
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    opacities = np.asarray(opacities, dtype=np.float32).reshape(-1)
    return np.stack([
        pack_half2x16(positions[:, 0], positions[:, 1]),
        pack_half2x16(positions[:, 2], opacities),
    ], axis=1)


def pack_covariances(covariances):
    cov = np.asarray(covariances, dtype=np.float32).reshape(-1, 6)
    return np.stack([
        pack_half2x16(cov[:, 0], cov[:, 1]),
        pack_half2x16(cov[:, 2], cov[:, 3]),
        pack_half2x16(cov[:, 4], cov[:, 5]),
        np.zeros(cov.shape[0], dtype=np.uint32),
    ], axis=1)


def truncate_sh(sh_coeffs, max_sh_degree=None):
    sh_coeffs = np.asarray(sh_coeffs, dtype=np.float32)
    if sh_coeffs.ndim == 2:
        sh_coeffs = sh_coeffs[:, None, :]
    if max_sh_degree is None:
        return sh_coeffs
    n_coeffs = num_sh_coeffs(max_sh_degree)
    if sh_coeffs.shape[1] < n_coeffs:
        raise ValueError(f"SH degree {max_sh_degree} needs {n_coeffs} coefficients, got {sh_coeffs.shape[1]}")
    return sh_coeffs[:, :n_coeffs]


class PointCloud:
    """Packed splat dataset with a fixed SH encoding and degree."""

    def __init__(self, pos_opacity, geometry_idx, sh_idx, covariances, sh_table, sh_encoding, sh_degree):
        self.sh_encoding = SHEncoding.parse(sh_encoding)
        self.sh_degree = check_sh_degree(sh_degree)
        self.pos_opacity = np.ascontiguousarray(pos_opacity, dtype=np.uint32).reshape(-1, 2)
        self.geometry_idx = np.ascontiguousarray(geometry_idx, dtype=np.int32).reshape(-1)
        self.sh_idx = np.ascontiguousarray(sh_idx, dtype=np.int32).reshape(-1)
        self.covariances = np.ascontiguousarray(covariances, dtype=np.uint32).reshape(-1, 4)
        self.sh_table = np.ascontiguousarray(sh_table)

        n = self.num_points
        if self.geometry_idx.shape[0] != n or self.sh_idx.shape[0] != n:
            raise ValueError("pos_opacity, geometry_idx and sh_idx must have the same length")
        if self.sh_table.size % self.sh_stride:
            raise ValueError(f"SH table size {self.sh_table.size} is not a multiple of the stride {self.sh_stride}")
        if n and (self.geometry_idx.min() < 0 or self.geometry_idx.max() >= self.num_geometries):
            raise ValueError("geometry index out of range")
        if n and (self.sh_idx.min() < 0 or self.sh_idx.max() >= self.num_sh_entries):
            raise ValueError("SH index out of range")

    @property
    def num_points(self):
        return self.pos_opacity.shape[0]

    @property
    def num_geometries(self):
        return self.covariances.shape[0]

    @property
    def sh_stride(self):
        return sh_table_stride(self.sh_encoding, self.sh_degree)

    @property
    def num_sh_entries(self):
        return self.sh_table.size // self.sh_stride

    @classmethod
    def from_covariances(cls, positions, opacities, covariances, sh_coeffs, sh_encoding="float",
                         max_sh_degree=None, geometry_idx=None, sh_idx=None):
        """Pack float data: (N, 3) positions, (N,) opacities, (G, 6) covariances, (F, n, 3) SH."""
        sh_coeffs = truncate_sh(sh_coeffs, max_sh_degree)
        degree = int(round(np.sqrt(sh_coeffs.shape[1]))) - 1
        n = np.asarray(positions).reshape(-1, 3).shape[0]
        if geometry_idx is None:
            geometry_idx = np.arange(n, dtype=np.int32)
        if sh_idx is None:
            sh_idx = np.arange(n, dtype=np.int32)
        return cls(
            pack_positions(positions, opacities),
            geometry_idx,
            sh_idx,
            pack_covariances(covariances),
            encode_sh_table(sh_coeffs, sh_encoding),
            sh_encoding,
            degree,
        )

    @classmethod
    def from_gaussians(cls, positions, opacities, scales, rotations, sh_coeffs, sh_encoding="float",
                       max_sh_degree=None, scale_modifier=1.0):
        """Pack activated Gaussians: linear scales and (w, x, y, z) rotations."""
        covariances = build_covariances(scales, rotations, scale_modifier)
        return cls.from_covariances(positions, opacities, covariances, sh_coeffs, sh_encoding, max_sh_degree)

    @classmethod
    def from_quantized(cls, positions, geometry_idx, sh_idx,
                       opacity_codes, opacity_pair,
                       scale_codes, scale_pair,
                       rotation_codes, rotation_pair,
                       feature_codes, feature_pair,
                       scaling_factor_codes=None, scaling_factor_pair=None,
                       sh_encoding="byte", max_sh_degree=None):
        """Build a dataset from 8-bit quantized attribute tables.

        Geometry codes (scale, rotation, scaling factor) are indexed by
        ``geometry_idx`` and feature codes by ``sh_idx``; opacity codes are per splat.
        Dequantized features are stored as they are; a ``byte`` table raises
        ValueError for values outside its range, use ``float`` or ``half`` for those.
        """
        scales = dequantize_scales(scale_codes, scale_pair, scaling_factor_codes, scaling_factor_pair)
        rotations = dequantize_rotations(rotation_codes, rotation_pair)
        opacities = dequantize_opacities(opacity_codes, opacity_pair)
        features = dequantize_features(feature_codes, feature_pair)
        logger.info(f"Dequantized {len(opacities)} splats, {len(scales)} geometries, {len(features)} feature sets")
        return cls.from_covariances(
            positions,
            opacities,
            build_covariances(scales, rotations),
            features,
            sh_encoding,
            max_sh_degree,
            geometry_idx=geometry_idx,
            sh_idx=sh_idx,
        )

    def to_device(self, device=None):
        """Upload to the device, returns (PackedSplats, SH table array)."""
        device = device or DEVICE
        splats = PackedSplats()
        splats.pos_opacity = wp.array(self.pos_opacity, dtype=wp.uint32, device=device)
        splats.geometry_idx = to_warp_array(self.geometry_idx, wp.int32, device=device)
        splats.sh_idx = to_warp_array(self.sh_idx, wp.int32, device=device)
        splats.covariances = wp.array(self.covariances, dtype=wp.uint32, device=device)
        sh_table = to_warp_array(self.sh_table.reshape(-1), sh_table_dtype(self.sh_encoding), device=device)
        return splats, sh_table
