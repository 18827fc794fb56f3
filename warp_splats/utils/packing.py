"""
Host-side codecs for the packed words stored in the splat buffers.

All packed formats are built from explicit integer arithmetic on fixed-width
unsigned words (low lane first), matching the device-side decoders in
``wp_utils``:

- half2x16: two IEEE half floats per uint32, first value in bits 0..15
- snorm8x4: four signed-normalized bytes per uint32, first value in bits 0..7
- unorm8x4: four unsigned-normalized bytes per uint32 (RGBA colors)
"""
import numpy as np


def float_to_half_bits(values):
    return np.asarray(values, dtype=np.float32).astype(np.float16).view(np.uint16)


def half_bits_to_float(bits):
    return np.asarray(bits, dtype=np.uint16).view(np.float16).astype(np.float32)


def pack_half2x16(lo, hi):
    lo_bits = float_to_half_bits(lo).astype(np.uint32)
    hi_bits = float_to_half_bits(hi).astype(np.uint32)
    return lo_bits | (hi_bits << np.uint32(16))


def unpack_half2x16(words):
    words = np.asarray(words, dtype=np.uint32)
    lo = half_bits_to_float((words & np.uint32(0xFFFF)).astype(np.uint16))
    hi = half_bits_to_float((words >> np.uint32(16)).astype(np.uint16))
    return lo, hi


def pack_half_stream(values):
    """Pack a flat stream of floats into uint32 words, two halves per word."""
    values = np.asarray(values, dtype=np.float32).ravel()
    if values.size % 2:
        values = np.append(values, np.float32(0.0))
    return pack_half2x16(values[0::2], values[1::2])


def unpack_half_stream(words, count):
    lo, hi = unpack_half2x16(words)
    stream = np.empty(lo.size * 2, dtype=np.float32)
    stream[0::2] = lo
    stream[1::2] = hi
    return stream[:count]


def encode_snorm8(values):
    values = np.clip(np.asarray(values, dtype=np.float32), -1.0, 1.0)
    return np.round(values * 127.0).astype(np.int8)


def decode_snorm8(codes):
    return np.maximum(np.asarray(codes, dtype=np.int8).astype(np.float32) / 127.0, -1.0)


def pack_byte_stream(codes):
    """Pack a flat stream of int8 codes into uint32 words, four bytes per word."""
    codes = np.asarray(codes, dtype=np.int8).ravel()
    pad = (-codes.size) % 4
    if pad:
        codes = np.append(codes, np.zeros(pad, dtype=np.int8))
    lanes = codes.view(np.uint8).astype(np.uint32).reshape(-1, 4)
    return (lanes[:, 0]
            | (lanes[:, 1] << np.uint32(8))
            | (lanes[:, 2] << np.uint32(16))
            | (lanes[:, 3] << np.uint32(24)))


def unpack_byte_stream(words, count):
    words = np.asarray(words, dtype=np.uint32)
    lanes = np.stack([(words >> np.uint32(8 * k)) & np.uint32(0xFF) for k in range(4)], axis=-1)
    return lanes.astype(np.uint8).view(np.int8).ravel()[:count]


def pack_unorm4x8(rgba):
    rgba = np.clip(np.asarray(rgba, dtype=np.float32), 0.0, 1.0)
    lanes = np.round(rgba * 255.0).astype(np.uint32)
    return (lanes[..., 0]
            | (lanes[..., 1] << np.uint32(8))
            | (lanes[..., 2] << np.uint32(16))
            | (lanes[..., 3] << np.uint32(24)))


def unpack_unorm4x8(words):
    words = np.asarray(words, dtype=np.uint32)
    lanes = np.stack([(words >> np.uint32(8 * k)) & np.uint32(0xFF) for k in range(4)], axis=-1)
    return lanes.astype(np.float32) / 255.0
