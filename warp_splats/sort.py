"""
Depth sort stage sizing and execution.

The preprocess kernel sizes the sort dispatch in blocks of
SORT_WG_SIZE * SORT_KEYS_PER_THREAD keys. The keyval buffers are padded the
same way the radix sorter pads them: whole scatter blocks, rounded up to whole
histogram blocks.
"""
from collections import namedtuple

import warp as wp
from loguru import logger

from warp_splats.config import KEYS_PER_WORKGROUP, SORT_KEYS_PER_THREAD, SORT_WG_SIZE

# IMPORTANT: the following constants have to be synced with the sort kernel tiling
HISTOGRAM_WG_SIZE = SORT_WG_SIZE
RS_RADIX_LOG2 = 8                     # 8 bit radices
RS_HISTOGRAM_BLOCK_ROWS = SORT_KEYS_PER_THREAD
RS_SCATTER_BLOCK_ROWS = RS_HISTOGRAM_BLOCK_ROWS

# warp.utils.radix_sort_pairs supports at most 2^30 pairs
MAX_SORT_KEYS = 1 << 30

ScatterHistogramSizes = namedtuple(
    "ScatterHistogramSizes",
    ["scatter_block_kvs", "scatter_blocks_ru", "count_ru_scatter",
     "histo_block_kvs", "histo_blocks_ru", "count_ru_histo"],
)


def scatter_histogram_sizes(keysize):
    scatter_block_kvs = HISTOGRAM_WG_SIZE * RS_SCATTER_BLOCK_ROWS
    scatter_blocks_ru = (keysize + scatter_block_kvs - 1) // scatter_block_kvs
    count_ru_scatter = scatter_blocks_ru * scatter_block_kvs

    histo_block_kvs = HISTOGRAM_WG_SIZE * RS_HISTOGRAM_BLOCK_ROWS
    histo_blocks_ru = (count_ru_scatter + histo_block_kvs - 1) // histo_block_kvs
    count_ru_histo = histo_blocks_ru * histo_block_kvs

    return ScatterHistogramSizes(scatter_block_kvs, scatter_blocks_ru, count_ru_scatter,
                                 histo_block_kvs, histo_blocks_ru, count_ru_histo)


def keyval_buffer_size(keysize):
    # radix_sort_pairs needs twice the key count as scratch
    return max(scatter_histogram_sizes(keysize).count_ru_histo, 2 * keysize, 1)


def min_sort_workgroups(num_keys):
    return (num_keys + KEYS_PER_WORKGROUP - 1) // KEYS_PER_WORKGROUP


def create_keyval_buffers(keysize, device=None):
    size = keyval_buffer_size(keysize)
    depth_keys = wp.zeros(size, dtype=float, device=device)
    indices = wp.zeros(size, dtype=wp.int32, device=device)
    return depth_keys, indices


def sort_splats(sort_buffers, num_keys, dispatch_x=None):
    """Sort the first ``num_keys`` (depth key, index) pairs in place, nearest first."""
    if num_keys > MAX_SORT_KEYS:
        raise ValueError(f"{num_keys} keys exceed the maximum of {MAX_SORT_KEYS} supported by the sort")
    if num_keys > sort_buffers.depth_keys.shape[0] // 2:
        raise ValueError(f"keyval buffers of size {sort_buffers.depth_keys.shape[0]} cannot sort {num_keys} keys")
    if dispatch_x is not None and dispatch_x < min_sort_workgroups(num_keys):
        logger.error(f"Sort dispatch of {dispatch_x} workgroups cannot cover {num_keys} keys")
    if num_keys == 0:
        return

    wp.utils.radix_sort_pairs(sort_buffers.depth_keys, sort_buffers.indices, num_keys)
