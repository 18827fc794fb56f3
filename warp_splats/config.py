"""
Configuration settings and constants for the Gaussian splat preprocessing pipeline.
"""
import numbers
import os
from enum import IntEnum

import numpy as np
import warp as wp

wp.init()

# Warp data types (keep capitalized as they are types)
WP_FLOAT32 = wp.float32
VEC6 = wp.types.vector(length=6, dtype=WP_FLOAT32)

# Use "cpu" or "cuda"
DEVICE = os.environ.get("WARP_SPLATS_DEVICE", str(wp.get_preferred_device()))

# Preprocess launch grid is padded to whole workgroups
PREPROCESS_WG_SIZE = wp.constant(256)

# IMPORTANT: these two have to match the tiling of the sort kernel
SORT_WG_SIZE = wp.constant(256)
SORT_KEYS_PER_THREAD = wp.constant(15)
KEYS_PER_WORKGROUP = wp.constant(256 * 15)

# Screen-space constants of the projection step
COV2D_BLUR = wp.constant(0.3)          # low-pass filter added to the 2D covariance diagonal
MIN_EIGENVALUE = wp.constant(0.1)      # floor for the smaller 2D eigenvalue
FRUSTUM_BOUND = wp.constant(1.2)       # x/y culling bound in units of clip w
QUAD_EXTENT = wp.constant(2.0)         # half-size of the splat quad in local units

# Indirect argument layouts
DRAW_VERTEX_COUNT = wp.constant(4)
DRAW_ARGS_LEN = 4
DISPATCH_ARGS_LEN = 3

MAX_SH_DEGREE = 3


class ConfigurationError(ValueError):
    """Raised for dataset or pipeline settings that cannot be dispatched."""


class SHEncoding(IntEnum):
    """Storage encoding of the spherical harmonics table, fixed per dataset."""

    FLOAT = 0
    HALF = 1
    BYTE = 2

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise ConfigurationError(f"Unsupported SH encoding: {value!r}") from None
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(f"Unsupported SH encoding: {value!r}") from None


def check_sh_degree(degree):
    """Return ``degree`` as a plain int, numpy integers included."""
    if isinstance(degree, (bool, np.bool_)) or not isinstance(degree, numbers.Integral):
        raise ConfigurationError(f"SH degree must be an integer, got {degree!r}")
    degree = int(degree)
    if degree < 0 or degree > MAX_SH_DEGREE:
        raise ConfigurationError(f"SH degree must be in [0, {MAX_SH_DEGREE}], got {degree!r}")
    return degree


def num_sh_coeffs(degree):
    return (check_sh_degree(degree) + 1) ** 2


class RenderParams:
    """Parameters for rendering a splat scene."""

    # === DATASET ===
    max_sh_degree = 3          # Highest SH degree stored in the table (0..3)
    sh_encoding = "float"      # SH storage encoding: float, half or byte

    # === CAMERA ===
    width = 800
    height = 600
    fovy = 0.8                 # Vertical field of view (radians)
    znear = 0.01               # Near clipping plane
    zfar = 100.0               # Far clipping plane

    # === SCENE ===
    scale_modifier = 1.0       # Global scale multiplier applied when building covariances
    background_color = [0.0, 0.0, 0.0]

    @classmethod
    def update(cls, **kwargs):
        """Update parameters with new values."""
        for key, value in kwargs.items():
            if hasattr(cls, key) and not key.startswith("_") and not callable(getattr(cls, key)):
                setattr(cls, key, value)
            else:
                raise ConfigurationError(f"Unknown parameter: {key}")

    @classmethod
    def get_config_dict(cls):
        """Get parameters as a dictionary."""
        return {
            'max_sh_degree': cls.max_sh_degree,
            'sh_encoding': cls.sh_encoding,
            'width': cls.width,
            'height': cls.height,
            'fovy': cls.fovy,
            'znear': cls.znear,
            'zfar': cls.zfar,
            'scale_modifier': cls.scale_modifier,
            'background_color': cls.background_color,
        }
