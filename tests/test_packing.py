import numpy as np

from warp_splats.utils.packing import (
    decode_snorm8,
    encode_snorm8,
    pack_byte_stream,
    pack_half2x16,
    pack_half_stream,
    pack_unorm4x8,
    unpack_byte_stream,
    unpack_half2x16,
    unpack_half_stream,
    unpack_unorm4x8,
)


def test_half2x16_low_lane_first():
    word = pack_half2x16(np.array([1.0]), np.array([-2.0]))[0]
    assert int(word) == 0x3C00 | (0xC000 << 16)
    lo, hi = unpack_half2x16(np.array([word]))
    assert lo[0] == 1.0
    assert hi[0] == -2.0


def test_half_stream_pads_odd_length():
    values = np.array([0.5, 1.5, -3.0], dtype=np.float32)
    words = pack_half_stream(values)
    assert words.shape == (2,)
    assert int(words[1]) >> 16 == 0
    np.testing.assert_array_equal(unpack_half_stream(words, 3), values)


def test_snorm8_saturates_at_minus_one():
    np.testing.assert_array_equal(decode_snorm8([-128, -127, 127]), [-1.0, -1.0, 1.0])
    np.testing.assert_array_equal(encode_snorm8([2.0, -2.0, 0.0]), [127, -127, 0])


def test_byte_stream_lowest_byte_first():
    codes = np.array([1, -1, 2, 3, 4], dtype=np.int8)
    words = pack_byte_stream(codes)
    assert words.shape == (2,)
    assert int(words[0]) == 0x0302FF01
    assert int(words[1]) == 0x04
    np.testing.assert_array_equal(unpack_byte_stream(words, 5), codes)


def test_unorm4x8_red_in_low_byte():
    word = pack_unorm4x8(np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32))
    assert int(word) == 0xFF
    rgba = unpack_unorm4x8(pack_unorm4x8(np.array([0.2, 0.4, 0.6, 1.5], dtype=np.float32)))
    np.testing.assert_allclose(rgba, [0.2, 0.4, 0.6, 1.0], atol=0.5 / 255)
