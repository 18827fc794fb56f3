import numpy as np
import warp as wp

from warp_splats.config import DEVICE


def to_warp_array(data, dtype, device=None):
    if isinstance(data, wp.array):
        return data
    if data is None:
        return None
    data = np.ascontiguousarray(data)
    return wp.array(data, dtype=dtype, device=device or DEVICE)


def workgroup_count(n, wg_size):
    return (n + wg_size - 1) // wg_size


# --- Packed word decoders (device side of utils.packing) ---

@wp.func
def half_to_float(bits: wp.uint32) -> float:
    """Decode the low 16 bits of ``bits`` as an IEEE half float."""
    exponent = wp.int32((bits >> wp.uint32(10)) & wp.uint32(0x1F))
    mantissa = wp.float32(wp.int32(bits & wp.uint32(0x3FF)))
    value = float(0.0)
    if exponent == 0:
        # subnormal, mantissa * 2^-24
        value = mantissa * 5.9604644775390625e-08
    elif exponent == 31:
        value = wp.inf
        if mantissa != 0.0:
            value = wp.nan
    elif exponent >= 15:
        value = (1.0 + mantissa / 1024.0) * wp.float32(1 << (exponent - 15))
    else:
        value = (1.0 + mantissa / 1024.0) / wp.float32(1 << (15 - exponent))
    if (bits & wp.uint32(0x8000)) != wp.uint32(0):
        value = -value
    return value


@wp.func
def unpack_half2x16(word: wp.uint32) -> wp.vec2:
    return wp.vec2(half_to_float(word & wp.uint32(0xFFFF)), half_to_float(word >> wp.uint32(16)))


@wp.func
def unpack_snorm8(word: wp.uint32, lane: int) -> float:
    code = wp.int32((word >> wp.uint32(lane * 8)) & wp.uint32(0xFF))
    if code > 127:
        code = code - 256
    return wp.max(wp.float32(code) / 127.0, -1.0)


@wp.func
def unorm8(x: float) -> wp.uint32:
    return wp.uint32(wp.int32(wp.round(wp.clamp(x, 0.0, 1.0) * 255.0)))


@wp.func
def pack_unorm4x8(color: wp.vec4) -> wp.uint32:
    return (unorm8(color[0])
            | (unorm8(color[1]) << wp.uint32(8))
            | (unorm8(color[2]) << wp.uint32(16))
            | (unorm8(color[3]) << wp.uint32(24)))


@wp.func
def unpack_unorm4x8(word: wp.uint32) -> wp.vec4:
    return wp.vec4(
        wp.float32(wp.int32(word & wp.uint32(0xFF))) / 255.0,
        wp.float32(wp.int32((word >> wp.uint32(8)) & wp.uint32(0xFF))) / 255.0,
        wp.float32(wp.int32((word >> wp.uint32(16)) & wp.uint32(0xFF))) / 255.0,
        wp.float32(wp.int32((word >> wp.uint32(24)) & wp.uint32(0xFF))) / 255.0,
    )


@wp.func
def to_vec4h(v: wp.vec4) -> wp.vec4h:
    return wp.vec4h(wp.float16(v[0]), wp.float16(v[1]), wp.float16(v[2]), wp.float16(v[3]))


@wp.func
def from_vec4h(v: wp.vec4h) -> wp.vec4:
    return wp.vec4(wp.float32(v[0]), wp.float32(v[1]), wp.float32(v[2]), wp.float32(v[3]))
