"""
Spherical harmonics color evaluation.

A splat's view-dependent color is stored as up to 16 RGB coefficients
(degrees 0..3) in one of three encodings, chosen once for the whole dataset:

- FLOAT: three consecutive float32 values per coefficient
- HALF:  a stream of half floats packed two per uint32 word; an even
         coefficient starts on a word boundary, an odd one in the high lane
- BYTE:  a stream of snorm8 codes packed four per uint32 word; the DC
         coefficient is stored over [-4, 4], all others over [-0.5, 0.5]

Evaluation uses the real SH basis with Condon-Shortley phase:

    c(d) = sum_l sum_m C_lm * Y_lm(d) * k_lm + 0.5

The 0.5 bias re-centers colors that the encoder stored around zero.
"""
import functools

import numpy as np
import warp as wp

from warp_splats.config import DEVICE, SHEncoding, check_sh_degree, num_sh_coeffs
from warp_splats.utils.packing import (
    decode_snorm8,
    encode_snorm8,
    pack_byte_stream,
    pack_half_stream,
    unpack_byte_stream,
    unpack_half_stream,
)
from warp_splats.utils.wp_utils import to_warp_array, unpack_half2x16, unpack_snorm8

# Define spherical harmonics constants
SH_C0 = wp.constant(0.28209479177387814)
SH_C1 = wp.constant(0.4886025119029199)
SH_C2_0 = wp.constant(1.0925484305920792)
SH_C2_2 = wp.constant(0.31539156525252005)
SH_C2_4 = wp.constant(0.5462742152960396)
SH_C3_0 = wp.constant(0.5900435899266435)
SH_C3_1 = wp.constant(2.890611442640554)
SH_C3_2 = wp.constant(0.4570457994644658)
SH_C3_3 = wp.constant(0.3731763325901154)
SH_C3_5 = wp.constant(1.445305721320277)

# Value range of the snorm8 codes per coefficient
SH_BYTE_DC_RANGE = wp.constant(4.0)
SH_BYTE_REST_RANGE = wp.constant(0.5)


def sh_table_stride(encoding, degree):
    """Elements (floats or words) taken by one coefficient set in the table."""
    encoding = SHEncoding.parse(encoding)
    components = num_sh_coeffs(degree) * 3
    if encoding == SHEncoding.FLOAT:
        return components
    if encoding == SHEncoding.HALF:
        return (components + 1) // 2
    return (components + 3) // 4


def sh_table_dtype(encoding):
    if SHEncoding.parse(encoding) == SHEncoding.FLOAT:
        return wp.float32
    return wp.uint32


def encode_sh_table(coeffs, encoding):
    """Encode SH coefficients of shape (F, n_coeffs, 3) into a flat table."""
    encoding = SHEncoding.parse(encoding)
    coeffs = np.asarray(coeffs, dtype=np.float32)
    if coeffs.ndim != 3 or coeffs.shape[2] != 3:
        raise ValueError(f"SH coefficients must have shape (F, n_coeffs, 3), got {coeffs.shape}")
    n_coeffs = coeffs.shape[1]
    degree = int(round(np.sqrt(n_coeffs))) - 1
    if (degree + 1) ** 2 != n_coeffs:
        raise ValueError(f"{n_coeffs} is not a valid number of SH coefficients")
    stride = sh_table_stride(encoding, degree)

    if encoding == SHEncoding.FLOAT:
        return coeffs.reshape(-1).copy()

    if encoding == SHEncoding.HALF:
        entries = [pack_half_stream(entry) for entry in coeffs]
    else:
        ranges = np.full((n_coeffs, 1), SH_BYTE_REST_RANGE, dtype=np.float32)
        ranges[0] = SH_BYTE_DC_RANGE
        # snorm8 cannot hold values past the range, refuse instead of clipping
        overflow = np.abs(coeffs) > ranges[None]
        if overflow.any():
            entry, coeff = np.argwhere(overflow)[0][:2]
            raise ValueError(
                f"SH coefficient {coeff} of entry {entry} is {coeffs[entry, coeff].tolist()}, "
                f"outside the byte encoding range of ±{float(ranges[coeff, 0])}")
        entries = [pack_byte_stream(encode_snorm8(entry / ranges)) for entry in coeffs]

    table = np.zeros((coeffs.shape[0], stride), dtype=np.uint32)
    for i, words in enumerate(entries):
        table[i, :words.size] = words
    return table.reshape(-1)


def decode_sh_table(table, encoding, degree):
    """Inverse of encode_sh_table, returns coefficients of shape (F, n_coeffs, 3)."""
    encoding = SHEncoding.parse(encoding)
    n_coeffs = num_sh_coeffs(degree)
    stride = sh_table_stride(encoding, degree)
    table = np.asarray(table)
    entries = table.reshape(-1, stride)

    if encoding == SHEncoding.FLOAT:
        return entries.astype(np.float32).reshape(-1, n_coeffs, 3)

    out = np.empty((entries.shape[0], n_coeffs, 3), dtype=np.float32)
    for i, words in enumerate(entries):
        if encoding == SHEncoding.HALF:
            out[i] = unpack_half_stream(words, n_coeffs * 3).reshape(n_coeffs, 3)
        else:
            values = decode_snorm8(unpack_byte_stream(words, n_coeffs * 3)).reshape(n_coeffs, 3)
            values[0] *= SH_BYTE_DC_RANGE
            values[1:] *= SH_BYTE_REST_RANGE
            out[i] = values
    return out


# --- Coefficient readers, one per encoding ---

@wp.func
def read_sh_float(table: wp.array(dtype=wp.float32), sh_idx: int, stride: int, c: int) -> wp.vec3:
    base = sh_idx * stride + c * 3
    return wp.vec3(table[base], table[base + 1], table[base + 2])


@wp.func
def read_sh_half(table: wp.array(dtype=wp.uint32), sh_idx: int, stride: int, c: int) -> wp.vec3:
    h = sh_idx * stride * 2 + c * 3
    w = h // 2
    a = unpack_half2x16(table[w])
    b = unpack_half2x16(table[w + 1])
    result = wp.vec3(a[0], a[1], b[0])
    # odd coefficients start in the high lane
    if h % 2 == 1:
        result = wp.vec3(a[1], b[0], b[1])
    return result


@wp.func
def read_snorm8(table: wp.array(dtype=wp.uint32), idx: int) -> float:
    return unpack_snorm8(table[idx // 4], idx % 4)


@wp.func
def read_sh_byte(table: wp.array(dtype=wp.uint32), sh_idx: int, stride: int, c: int) -> wp.vec3:
    b = sh_idx * stride * 4 + c * 3
    v = wp.vec3(read_snorm8(table, b), read_snorm8(table, b + 1), read_snorm8(table, b + 2))
    scale = float(SH_BYTE_REST_RANGE)
    if c == 0:
        scale = SH_BYTE_DC_RANGE
    return v * scale


SH_READERS = {
    SHEncoding.FLOAT: read_sh_float,
    SHEncoding.HALF: read_sh_half,
    SHEncoding.BYTE: read_sh_byte,
}


# --- Basis terms per degree ---

@wp.func
def sh_degree1(d: wp.vec3, c1: wp.vec3, c2: wp.vec3, c3: wp.vec3) -> wp.vec3:
    x, y, z = d[0], d[1], d[2]
    return -SH_C1 * y * c1 + SH_C1 * z * c2 - SH_C1 * x * c3


@wp.func
def sh_degree2(d: wp.vec3, c4: wp.vec3, c5: wp.vec3, c6: wp.vec3, c7: wp.vec3, c8: wp.vec3) -> wp.vec3:
    x, y, z = d[0], d[1], d[2]
    xx, yy, zz = x * x, y * y, z * z
    return (SH_C2_0 * x * y * c4
            - SH_C2_0 * y * z * c5
            + SH_C2_2 * (2.0 * zz - xx - yy) * c6
            - SH_C2_0 * x * z * c7
            + SH_C2_4 * (xx - yy) * c8)


@wp.func
def sh_degree3(d: wp.vec3, c9: wp.vec3, c10: wp.vec3, c11: wp.vec3, c12: wp.vec3,
               c13: wp.vec3, c14: wp.vec3, c15: wp.vec3) -> wp.vec3:
    x, y, z = d[0], d[1], d[2]
    xx, yy, zz = x * x, y * y, z * z
    return (-SH_C3_0 * y * (3.0 * xx - yy) * c9
            + SH_C3_1 * x * y * z * c10
            - SH_C3_2 * y * (4.0 * zz - xx - yy) * c11
            + SH_C3_3 * z * (2.0 * zz - 3.0 * xx - 3.0 * yy) * c12
            - SH_C3_2 * x * (4.0 * zz - xx - yy) * c13
            + SH_C3_5 * z * (xx - yy) * c14
            - SH_C3_0 * x * (xx - 3.0 * yy) * c15)


@functools.lru_cache(maxsize=None)
def make_sh_evaluator(encoding, max_degree):
    """Build the color evaluator for one dataset configuration.

    The encoding and degree are resolved here, once; degrees above
    ``max_degree`` are compiled out so their coefficients are never read.
    """
    encoding = SHEncoding.parse(encoding)
    max_degree = check_sh_degree(max_degree)
    read_sh = SH_READERS[encoding]
    table_dtype = sh_table_dtype(encoding)

    @wp.func
    def evaluate_sh(dir: wp.vec3, table: wp.array(dtype=table_dtype), sh_idx: int, stride: int) -> wp.vec3:
        result = SH_C0 * read_sh(table, sh_idx, stride, 0)
        if wp.static(max_degree > 0):
            result = result + sh_degree1(
                dir,
                read_sh(table, sh_idx, stride, 1),
                read_sh(table, sh_idx, stride, 2),
                read_sh(table, sh_idx, stride, 3),
            )
        if wp.static(max_degree > 1):
            result = result + sh_degree2(
                dir,
                read_sh(table, sh_idx, stride, 4),
                read_sh(table, sh_idx, stride, 5),
                read_sh(table, sh_idx, stride, 6),
                read_sh(table, sh_idx, stride, 7),
                read_sh(table, sh_idx, stride, 8),
            )
        if wp.static(max_degree > 2):
            result = result + sh_degree3(
                dir,
                read_sh(table, sh_idx, stride, 9),
                read_sh(table, sh_idx, stride, 10),
                read_sh(table, sh_idx, stride, 11),
                read_sh(table, sh_idx, stride, 12),
                read_sh(table, sh_idx, stride, 13),
                read_sh(table, sh_idx, stride, 14),
                read_sh(table, sh_idx, stride, 15),
            )
        return result + wp.vec3(0.5, 0.5, 0.5)

    return evaluate_sh


@functools.lru_cache(maxsize=None)
def make_sh_kernel(encoding, max_degree):
    evaluate = make_sh_evaluator(encoding, max_degree)
    table_dtype = sh_table_dtype(encoding)

    @wp.kernel
    def wp_evaluate_sh(
        table: wp.array(dtype=table_dtype),
        stride: int,
        directions: wp.array(dtype=wp.vec3),
        sh_indices: wp.array(dtype=wp.int32),
        colors: wp.array(dtype=wp.vec3),
    ):
        i = wp.tid()
        colors[i] = evaluate(wp.normalize(directions[i]), table, sh_indices[i], stride)

    return wp_evaluate_sh


def evaluate_sh(table, encoding, max_degree, directions, sh_indices=None, device=None):
    """Evaluate SH colors for a batch of view directions.

    Args:
        table: Encoded SH table (flat numpy array or wp.array)
        encoding: SHEncoding of the table
        max_degree: Degree the table was encoded with
        directions: View directions of shape (N, 3), normalized on the device
        sh_indices: Coefficient set per direction, defaults to 0..N-1

    Returns:
        numpy array of shape (N, 3) with the biased (unclamped) colors
    """
    encoding = SHEncoding.parse(encoding)
    device = device or DEVICE
    kernel = make_sh_kernel(encoding, check_sh_degree(max_degree))
    directions = np.asarray(directions, dtype=np.float32).reshape(-1, 3)
    n = directions.shape[0]
    if sh_indices is None:
        sh_indices = np.arange(n, dtype=np.int32)

    table_wp = to_warp_array(table, sh_table_dtype(encoding), device=device)
    colors = wp.zeros(n, dtype=wp.vec3, device=device)
    wp.launch(
        kernel=kernel,
        dim=n,
        inputs=[
            table_wp,
            sh_table_stride(encoding, max_degree),
            to_warp_array(directions, wp.vec3, device=device),
            to_warp_array(np.asarray(sh_indices, dtype=np.int32), wp.int32, device=device),
            colors,
        ],
        device=device,
    )
    return colors.numpy()
