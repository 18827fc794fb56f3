"""
Gaussian Splatting - Preprocess and Compact

Mathematical Foundation:
Each splat i is a 3D Gaussian (μ_i, Σ_i, α_i, c_i) read from the packed store:
- μ_i ∈ ℝ³: position, stored as halves next to the opacity α_i
- Σ_i ∈ ℝ³ˣ³: covariance, shared through a geometry index
- c_i: view-dependent color from spherical harmonics, shared through an SH index

Pipeline (one invocation per splat):
1. CULLING: project μ_i to clip space and drop it outside the guard band → frustum_cull()
2. EWA SPLATTING: project Σ_i to the 2D covariance Σ'_i → compute_cov2d()
3. EXTENT: eigen-decompose Σ'_i into two screen axes → compute_extent()
4. COLOR: evaluate the SH color for the view direction → sh.make_sh_evaluator()
5. COMPACTION: claim a dense slot with an atomic counter and emit the 2D splat,
   its depth key and the indirect draw / sort arguments → make_preprocess_kernel()

The output order of survivors is unspecified; only the set of slots
[0, num_visible) is dense.
"""
import functools
from collections import namedtuple

import numpy as np
import warp as wp
from loguru import logger

from warp_splats.config import (
    COV2D_BLUR,
    DEVICE,
    DISPATCH_ARGS_LEN,
    DRAW_ARGS_LEN,
    DRAW_VERTEX_COUNT,
    FRUSTUM_BOUND,
    KEYS_PER_WORKGROUP,
    MIN_EIGENVALUE,
    PREPROCESS_WG_SIZE,
    ConfigurationError,
    SHEncoding,
    check_sh_degree,
)
from warp_splats.sh import make_sh_evaluator, sh_table_dtype
from warp_splats.sort import create_keyval_buffers
from warp_splats.structures import CameraUniforms, PackedSplats, SortBuffers, Splats2D
from warp_splats.utils.wp_utils import pack_unorm4x8, to_vec4h, unpack_half2x16, workgroup_count

PreprocessResult = namedtuple("PreprocessResult", ["points_2d", "sort_buffers", "num_visible", "dispatch_x"])


@wp.func
def frustum_cull(pos2d: wp.vec4) -> bool:
    """
    PIPELINE STEP 1: CULLING
    Reject splats whose center lies outside a guard band of 1.2x the view
    frustum in x and y, or in front of the near plane.
    """
    bound = FRUSTUM_BOUND * pos2d[3]
    return (pos2d[0] < -bound or pos2d[0] > bound
            or pos2d[1] < -bound or pos2d[1] > bound
            or pos2d[2] < -pos2d[3])


@wp.func
def read_covariance(covariances: wp.array2d(dtype=wp.uint32), g: int) -> wp.mat33:
    xx_xy = unpack_half2x16(covariances[g, 0])
    xz_yy = unpack_half2x16(covariances[g, 1])
    yz_zz = unpack_half2x16(covariances[g, 2])
    return wp.mat33(
        xx_xy[0], xx_xy[1], xz_yy[0],
        xx_xy[1], xz_yy[1], yz_zz[0],
        xz_yy[0], yz_zz[0], yz_zz[1]
    )


@wp.func
def compute_cov2d(camspace: wp.vec4, Vrk: wp.mat33, view: wp.mat44, focal: wp.vec2) -> wp.vec3:
    """
    PIPELINE STEP 2: EWA SPLATTING
    Project the 3D covariance to screen space: Σ_2D = J * W * Σ_3D * W^T * J^T

    - W is the rotation part of the world to camera transform
    - J is the Jacobian of the perspective projection at the camera-space
      center; the camera looks down -z so both diagonal terms carry a minus

    A 0.3 pixel² low-pass filter is added to the diagonal so every splat
    covers at least about one pixel. Returns (σ_xx, σ_xy, σ_yy).
    """
    x = camspace[0]
    y = camspace[1]
    z = camspace[2]
    J = wp.mat33(
        -focal[0] / z, 0.0, (focal[0] * x) / (z * z),
        0.0, -focal[1] / z, (focal[1] * y) / (z * z),
        0.0, 0.0, 0.0
    )
    W = wp.mat33(
        view[0, 0], view[0, 1], view[0, 2],
        view[1, 0], view[1, 1], view[1, 2],
        view[2, 0], view[2, 1], view[2, 2]
    )
    T = J * W
    cov = T * Vrk * wp.transpose(T)
    return wp.vec3(cov[0, 0] + COV2D_BLUR, cov[0, 1], cov[1, 1] + COV2D_BLUR)


@wp.func
def compute_extent(cov2d: wp.vec3, viewport: wp.vec2) -> wp.vec4:
    """
    PIPELINE STEP 3: EXTENT
    Eigen-decompose [[a, b], [b, c]] and return the two screen axes
    (v1.x, v1.y, v2.x, v2.y) in NDC units. Each axis is sqrt(2λ) along its
    eigenvector, so a quad spanning [-2, 2] local units covers 2√2 σ.
    """
    a = cov2d[0]
    b = cov2d[1]
    c = cov2d[2]
    mid = 0.5 * (a + c)
    radius = wp.length(wp.vec2(0.5 * (a - c), b))
    lambda1 = mid + radius
    lambda2 = wp.max(mid - radius, MIN_EIGENVALUE)

    # axis-aligned covariance: take the larger diagonal entry
    diagonal_vector = wp.vec2(1.0, 0.0)
    if c > a:
        diagonal_vector = wp.vec2(0.0, 1.0)
    if b != 0.0:
        diagonal_vector = wp.normalize(wp.vec2(b, lambda1 - a))

    v1 = wp.sqrt(2.0 * lambda1) * diagonal_vector
    v2 = wp.sqrt(2.0 * lambda2) * wp.vec2(diagonal_vector[1], -diagonal_vector[0])
    return wp.vec4(v1[0] / viewport[0], v1[1] / viewport[1], v2[0] / viewport[0], v2[1] / viewport[1])


@wp.kernel
def wp_reset_sort_infos(sort_buffers: SortBuffers):
    sort_buffers.sort_infos[0] = 0
    sort_buffers.draw_args[0] = DRAW_VERTEX_COUNT
    sort_buffers.draw_args[1] = 0
    sort_buffers.draw_args[2] = 0
    sort_buffers.draw_args[3] = 0
    sort_buffers.dispatch_args[0] = 0
    sort_buffers.dispatch_args[1] = 1
    sort_buffers.dispatch_args[2] = 1


@functools.lru_cache(maxsize=None)
def make_preprocess_kernel(encoding, max_degree):
    """Build the preprocess kernel for one SH encoding and degree, fixed per dataset."""
    encoding = SHEncoding.parse(encoding)
    max_degree = check_sh_degree(max_degree)
    evaluate_sh = make_sh_evaluator(encoding, max_degree)
    table_dtype = sh_table_dtype(encoding)

    @wp.kernel
    def wp_preprocess(
        # --- Inputs ---
        camera: CameraUniforms,                   # View / projection state of the frame
        splats: PackedSplats,                     # Packed splat store (N splats, G geometries)
        sh_table: wp.array(dtype=table_dtype),    # SH coefficients, one entry per SH index
        sh_stride: int,                           # Table elements per SH entry
        num_points: int,                          # N, the grid is padded beyond it

        # --- Outputs ---
        points_2d: Splats2D,                      # Compacted 2D splats
        sort_buffers: SortBuffers,                # Depth keys, indices and indirect args
    ):
        """
        PIPELINE STEP 5: COMPACTION
        Cull, project and shade one splat, then append the survivor to the
        dense output with an atomic fetch-and-add on the key counter.
        """
        idx = wp.tid()
        if idx >= num_points:
            return

        # one extra sort workgroup so the dispatch is never undersized
        if idx == 0:
            wp.atomic_add(sort_buffers.dispatch_args, 0, 1)

        xy = unpack_half2x16(splats.pos_opacity[idx, 0])
        z_opacity = unpack_half2x16(splats.pos_opacity[idx, 1])
        pos = wp.vec3(xy[0], xy[1], z_opacity[0])
        opacity = z_opacity[1]

        camspace = camera.view * wp.vec4(pos[0], pos[1], pos[2], 1.0)
        pos2d = camera.proj * camspace
        if frustum_cull(pos2d):
            return

        Vrk = read_covariance(splats.covariances, splats.geometry_idx[idx])
        cov2d = compute_cov2d(camspace, Vrk, camera.view, camera.focal)
        axes = compute_extent(cov2d, camera.viewport)
        center = pos2d / pos2d[3]

        campos = wp.vec3(camera.view_inv[0, 3], camera.view_inv[1, 3], camera.view_inv[2, 3])
        dir = wp.normalize(pos - campos)
        rgb = evaluate_sh(dir, sh_table, splats.sh_idx[idx], sh_stride)
        color = wp.vec4(wp.max(rgb[0], 0.0), wp.max(rgb[1], 0.0), wp.max(rgb[2], 0.0), opacity)

        store_idx = wp.atomic_add(sort_buffers.sort_infos, 0, 1)
        points_2d.axes[store_idx] = to_vec4h(axes)
        points_2d.centers[store_idx] = to_vec4h(center)
        points_2d.colors[store_idx] = pack_unorm4x8(color)
        sort_buffers.depth_keys[store_idx] = center[2]
        sort_buffers.indices[store_idx] = store_idx

        wp.atomic_add(sort_buffers.draw_args, 1, 1)
        # the survivor opening a new key block pays for its sort workgroup
        if store_idx % KEYS_PER_WORKGROUP == 0:
            wp.atomic_add(sort_buffers.dispatch_args, 0, 1)

    return wp_preprocess


def allocate_points_2d(num_points, device=None):
    device = device or DEVICE
    points_2d = Splats2D()
    points_2d.axes = wp.zeros(num_points, dtype=wp.vec4h, device=device)
    points_2d.centers = wp.zeros(num_points, dtype=wp.vec4h, device=device)
    points_2d.colors = wp.zeros(num_points, dtype=wp.uint32, device=device)
    return points_2d


def allocate_sort_buffers(num_points, device=None):
    device = device or DEVICE
    sort_buffers = SortBuffers()
    sort_buffers.depth_keys, sort_buffers.indices = create_keyval_buffers(num_points, device=device)
    sort_buffers.sort_infos = wp.zeros(1, dtype=wp.int32, device=device)
    sort_buffers.draw_args = wp.zeros(DRAW_ARGS_LEN, dtype=wp.int32, device=device)
    sort_buffers.dispatch_args = wp.zeros(DISPATCH_ARGS_LEN, dtype=wp.int32, device=device)
    return sort_buffers


class Preprocessor:
    """Preprocess-and-compact stage, compiled once for a dataset's SH encoding and degree."""

    def __init__(self, sh_encoding="float", max_sh_degree=3, device=None):
        self.sh_encoding = SHEncoding.parse(sh_encoding)
        self.max_sh_degree = check_sh_degree(max_sh_degree)
        self.device = device or DEVICE
        self.kernel = make_preprocess_kernel(self.sh_encoding, self.max_sh_degree)
        self._bound_cloud = None
        self._splats = None
        self._sh_table = None

    def check_cloud(self, cloud):
        if cloud.sh_encoding != self.sh_encoding:
            raise ConfigurationError(
                f"Dataset is {cloud.sh_encoding.name} encoded, pipeline was built for {self.sh_encoding.name}")
        if self.max_sh_degree > cloud.sh_degree:
            raise ConfigurationError(
                f"Pipeline evaluates SH degree {self.max_sh_degree}, dataset stores degree {cloud.sh_degree}")

    def bind(self, cloud):
        """Upload ``cloud`` to the device, reused until another cloud is bound."""
        if cloud is self._bound_cloud:
            return self._splats, self._sh_table
        self.check_cloud(cloud)
        self._splats, self._sh_table = cloud.to_device(self.device)
        self._bound_cloud = cloud
        logger.info(f"Uploaded {cloud.num_points} splats ({self.sh_encoding.name} SH, degree {cloud.sh_degree})")
        return self._splats, self._sh_table

    def allocate(self, num_points):
        return allocate_points_2d(num_points, self.device), allocate_sort_buffers(num_points, self.device)

    def run(self, cloud, camera, points_2d, sort_buffers):
        """Reset the counters and launch the preprocess kernel for one frame."""
        splats, sh_table = self.bind(cloud)
        num_points = cloud.num_points
        if points_2d.centers.shape[0] < num_points or sort_buffers.depth_keys.shape[0] < 2 * num_points:
            raise ValueError(f"Output buffers are too small for {num_points} splats")

        wp.launch(kernel=wp_reset_sort_infos, dim=1, inputs=[sort_buffers], device=self.device)
        if num_points == 0:
            return

        wp.launch(
            kernel=self.kernel,
            dim=workgroup_count(num_points, PREPROCESS_WG_SIZE) * PREPROCESS_WG_SIZE,
            inputs=[
                camera,             # camera
                splats,             # splats
                sh_table,           # sh_table
                cloud.sh_stride,    # sh_stride
                num_points,         # num_points
                points_2d,          # points_2d
                sort_buffers,       # sort_buffers
            ],
            device=self.device,
        )


def preprocess(cloud, camera, sh_encoding=None, max_sh_degree=None, device=None):
    """Run the preprocess stage on ``cloud`` and read back the counters.

    The SH encoding and degree default to those of the dataset.
    """
    preprocessor = Preprocessor(
        cloud.sh_encoding if sh_encoding is None else sh_encoding,
        cloud.sh_degree if max_sh_degree is None else max_sh_degree,
        device,
    )
    points_2d, sort_buffers = preprocessor.allocate(cloud.num_points)
    preprocessor.run(cloud, camera, points_2d, sort_buffers)
    num_visible = int(sort_buffers.sort_infos.numpy()[0])
    dispatch_x = int(sort_buffers.dispatch_args.numpy()[0])
    return PreprocessResult(points_2d, sort_buffers, num_visible, dispatch_x)


def read_points_2d(points_2d, count):
    """Copy the first ``count`` compacted splats to the host as float arrays."""
    return {
        "axes": points_2d.axes.numpy()[:count].astype(np.float32),
        "centers": points_2d.centers.numpy()[:count].astype(np.float32),
        "colors": points_2d.colors.numpy()[:count],
    }
