import warp as wp


# Camera state uploaded once per frame
@wp.struct
class CameraUniforms:
    view: wp.mat44          # world -> camera (camera looks down -z)
    view_inv: wp.mat44
    proj: wp.mat44          # camera -> clip (OpenGL depth range)
    proj_inv: wp.mat44
    viewport: wp.vec2       # (width, height) in pixels
    focal: wp.vec2          # (fx, fy) in pixels


# Raw splat store, read-only to the preprocess kernel
@wp.struct
class PackedSplats:
    pos_opacity: wp.array2d(dtype=wp.uint32)   # (N, 2) halves: (x, y), (z, opacity)
    geometry_idx: wp.array(dtype=wp.int32)      # (N,) index into covariances
    sh_idx: wp.array(dtype=wp.int32)            # (N,) index into the SH table
    covariances: wp.array2d(dtype=wp.uint32)    # (G, 4) halves: (xx, xy), (xz, yy), (yz, zz), padding


# Compacted screen-space splats, one entry per survivor
@wp.struct
class Splats2D:
    axes: wp.array(dtype=wp.vec4h)      # (v1.x, v1.y, v2.x, v2.y) in NDC units
    centers: wp.array(dtype=wp.vec4h)   # clip position divided by w
    colors: wp.array(dtype=wp.uint32)   # unorm8 RGBA, R in the lowest byte


# Inputs of the depth sort and the indirect draw
@wp.struct
class SortBuffers:
    depth_keys: wp.array(dtype=float)          # NDC depth, larger = farther
    indices: wp.array(dtype=wp.int32)          # compaction slot of each key
    sort_infos: wp.array(dtype=wp.int32)       # [0] = number of keys written
    draw_args: wp.array(dtype=wp.int32)        # vertex_count, instance_count, base_vertex, base_instance
    dispatch_args: wp.array(dtype=wp.int32)    # sort workgroups x, y, z
