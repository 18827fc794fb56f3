import numpy as np
import pytest
import warp as wp
from loguru import logger

from warp_splats.config import DEVICE
from warp_splats.forward import allocate_sort_buffers
from warp_splats.sort import keyval_buffer_size, min_sort_workgroups, scatter_histogram_sizes, sort_splats


def test_scatter_histogram_sizes():
    sizes = scatter_histogram_sizes(10000)
    assert sizes.scatter_block_kvs == 3840
    assert sizes.scatter_blocks_ru == 3
    assert sizes.count_ru_scatter == 11520
    assert sizes.count_ru_histo == 11520

    assert scatter_histogram_sizes(0).count_ru_histo == 0
    assert scatter_histogram_sizes(1).count_ru_histo == 3840


@pytest.mark.parametrize("count", [0, 1, 1000, 3840, 3841, 10000])
def test_keyval_buffers_hold_the_sort_scratch(count):
    size = keyval_buffer_size(count)
    assert size >= 2 * count
    assert size >= scatter_histogram_sizes(count).count_ru_histo


def test_min_sort_workgroups():
    assert min_sort_workgroups(0) == 0
    assert min_sort_workgroups(3840) == 1
    assert min_sort_workgroups(3841) == 2


def fill(sort_buffers, keys):
    count = len(keys)
    depth_keys = np.zeros(sort_buffers.depth_keys.shape[0], dtype=np.float32)
    depth_keys[:count] = keys
    indices = np.zeros(sort_buffers.indices.shape[0], dtype=np.int32)
    indices[:count] = np.arange(count)
    sort_buffers.depth_keys = wp.array(depth_keys, dtype=float, device=DEVICE)
    sort_buffers.indices = wp.array(indices, dtype=wp.int32, device=DEVICE)


def test_sort_is_ascending_and_carries_indices():
    rng = np.random.default_rng(0)
    keys = rng.uniform(-1.0, 1.0, size=5000).astype(np.float32)
    sort_buffers = allocate_sort_buffers(5000)
    fill(sort_buffers, keys)

    sort_splats(sort_buffers, 5000, dispatch_x=3)
    sorted_keys = sort_buffers.depth_keys.numpy()[:5000]
    sorted_indices = sort_buffers.indices.numpy()[:5000]
    np.testing.assert_array_equal(sorted_keys, np.sort(keys))
    np.testing.assert_array_equal(keys[sorted_indices], sorted_keys)
    assert sorted(sorted_indices.tolist()) == list(range(5000))


def test_sort_rejects_counts_beyond_the_buffers():
    sort_buffers = allocate_sort_buffers(4)
    with pytest.raises(ValueError):
        sort_splats(sort_buffers, sort_buffers.depth_keys.shape[0])


def test_undersized_dispatch_is_logged():
    messages = []
    handler = logger.add(messages.append, level="ERROR")
    try:
        sort_buffers = allocate_sort_buffers(4000)
        fill(sort_buffers, np.linspace(1.0, 0.0, 4000, dtype=np.float32))
        sort_splats(sort_buffers, 4000, dispatch_x=1)
    finally:
        logger.remove(handler)
    assert len(messages) == 1
    assert "cannot cover 4000 keys" in messages[0]
