"""
Gaussian Splatting - Quad Rasterization

Every compacted splat is drawn as one instanced quad of four vertices
(a triangle strip). The vertex stage expands the quad along the two screen
axes of the splat, the fragment stage evaluates the Gaussian falloff:

    local ∈ [-2, 2]²,  clip = center.xy + 2 * (local.x * v1 + local.y * v2)
    α = exp(-|local|²) * opacity,  fragments with |local|² > 4 are discarded

Quads are composited back-to-front with premultiplied "over" blending:
    C = c_src + (1 - α_src) * C
"""
import numpy as np
import warp as wp

from warp_splats.config import DEVICE, DRAW_VERTEX_COUNT, QUAD_EXTENT
from warp_splats.structures import Splats2D
from warp_splats.utils.wp_utils import from_vec4h, to_warp_array, unpack_unorm4x8


@wp.func
def quad_corner(vertex_id: int) -> wp.vec2:
    """Triangle strip corner of the quad: (-2,-2), (2,-2), (-2,2), (2,2)."""
    return wp.vec2(
        wp.float32((vertex_id & 1) * 4 - 2),
        wp.float32(((vertex_id >> 1) & 1) * 4 - 2),
    )


@wp.func
def splat_vertex(vertex_id: int, axes: wp.vec4, center: wp.vec4):
    """Clip position and local coordinate of one quad corner."""
    local = quad_corner(vertex_id)
    v1 = wp.vec2(axes[0], axes[1])
    v2 = wp.vec2(axes[2], axes[3])
    offset = 2.0 * (local[0] * v1 + local[1] * v2)
    return wp.vec4(center[0] + offset[0], center[1] + offset[1], center[2], center[3]), local


@wp.func
def splat_fragment(local: wp.vec2, color: wp.vec4):
    """Premultiplied fragment color and whether the fragment is discarded."""
    a = -wp.dot(local, local)
    discard = a < -QUAD_EXTENT * QUAD_EXTENT
    alpha = float(0.0)
    if not discard:
        alpha = wp.exp(a) * color[3]
    return wp.vec4(color[0] * alpha, color[1] * alpha, color[2] * alpha, alpha), discard


@wp.func
def ndc_from_pixel(px: int, py: int, viewport: wp.vec2) -> wp.vec2:
    # pixel centers, y up in NDC
    return wp.vec2(
        2.0 * (wp.float32(px) + 0.5) / viewport[0] - 1.0,
        1.0 - 2.0 * (wp.float32(py) + 0.5) / viewport[1],
    )


@wp.kernel
def wp_splat_vertices(
    # --- Inputs ---
    points_2d: Splats2D,                        # Compacted 2D splats
    sorted_indices: wp.array(dtype=wp.int32),   # Splat slot of each instance, in draw order

    # --- Outputs ---
    clip_positions: wp.array2d(dtype=wp.vec4),  # (instances, 4) corner clip positions
    local_coords: wp.array2d(dtype=wp.vec2),    # (instances, 4) corner local coordinates
    colors: wp.array(dtype=wp.vec4),            # (instances,) unpacked RGBA
):
    instance, vertex_id = wp.tid()
    slot = sorted_indices[instance]
    clip, local = splat_vertex(vertex_id, from_vec4h(points_2d.axes[slot]), from_vec4h(points_2d.centers[slot]))
    clip_positions[instance, vertex_id] = clip
    local_coords[instance, vertex_id] = local
    if vertex_id == 0:
        colors[instance] = unpack_unorm4x8(points_2d.colors[slot])


@wp.kernel
def wp_rasterize_splats(
    # --- Inputs ---
    points_2d: Splats2D,                        # Compacted 2D splats
    sorted_indices: wp.array(dtype=wp.int32),   # Splat slots sorted nearest first
    num_instances: int,                         # Instance count of the draw
    viewport: wp.vec2,                          # (width, height) in pixels
    background: wp.vec3,                        # Background color

    # --- Outputs ---
    rendered_image: wp.array2d(dtype=wp.vec3),  # (H, W) RGB image
    alpha_image: wp.array2d(dtype=float),       # (H, W) accumulated coverage
):
    """
    Software rasterizer for the instanced quad draw, one thread per pixel.

    The pixel is mapped back into each quad's local frame; it is covered when
    the local coordinate lies inside [-2, 2]², the area spanned by the four
    strip vertices.
    """
    py, px = wp.tid()
    p = ndc_from_pixel(px, py, viewport)

    C = background
    A = float(0.0)
    # back-to-front: farthest instance first
    for k in range(num_instances):
        slot = sorted_indices[num_instances - 1 - k]
        axes = from_vec4h(points_2d.axes[slot])
        center = from_vec4h(points_2d.centers[slot])

        # invert clip = center + 2 * [v1 v2] * local
        m00 = 2.0 * axes[0]
        m10 = 2.0 * axes[1]
        m01 = 2.0 * axes[2]
        m11 = 2.0 * axes[3]
        det = m00 * m11 - m01 * m10
        if det == 0.0:
            continue
        dx = p[0] - center[0]
        dy = p[1] - center[1]
        local = wp.vec2((m11 * dx - m01 * dy) / det, (m00 * dy - m10 * dx) / det)
        if wp.abs(local[0]) > QUAD_EXTENT or wp.abs(local[1]) > QUAD_EXTENT:
            continue

        src, discard = splat_fragment(local, unpack_unorm4x8(points_2d.colors[slot]))
        if discard:
            continue
        C = wp.vec3(src[0], src[1], src[2]) + (1.0 - src[3]) * C
        A = src[3] + (1.0 - src[3]) * A

    rendered_image[py, px] = C
    alpha_image[py, px] = A


@wp.kernel
def wp_shade_fragments(
    local_coords: wp.array(dtype=wp.vec2),
    colors: wp.array(dtype=wp.vec4),
    fragments: wp.array(dtype=wp.vec4),
    discarded: wp.array(dtype=wp.int32),
):
    i = wp.tid()
    frag, discard = splat_fragment(local_coords[i], colors[i])
    fragments[i] = frag
    if discard:
        discarded[i] = 1


def shade_fragments(local_coords, colors, device=None):
    """Evaluate the fragment rule for (M, 2) local coordinates and (M, 4) RGBA colors.

    Returns the premultiplied fragments (M, 4) and a boolean discard mask (M,).
    """
    device = device or DEVICE
    local_coords = np.asarray(local_coords, dtype=np.float32).reshape(-1, 2)
    colors = np.asarray(colors, dtype=np.float32).reshape(-1, 4)
    count = local_coords.shape[0]
    fragments = wp.zeros(count, dtype=wp.vec4, device=device)
    discarded = wp.zeros(count, dtype=wp.int32, device=device)
    wp.launch(
        kernel=wp_shade_fragments,
        dim=count,
        inputs=[
            to_warp_array(local_coords, wp.vec2, device=device),
            to_warp_array(colors, wp.vec4, device=device),
            fragments,
            discarded,
        ],
        device=device,
    )
    return fragments.numpy(), discarded.numpy().astype(bool)


def splat_vertices(points_2d, sorted_indices, num_instances, device=None):
    """Run the vertex stage, returns (clip positions, local coordinates, colors) on the host."""
    device = device or DEVICE
    clip_positions = wp.zeros((num_instances, DRAW_VERTEX_COUNT), dtype=wp.vec4, device=device)
    local_coords = wp.zeros((num_instances, DRAW_VERTEX_COUNT), dtype=wp.vec2, device=device)
    colors = wp.zeros(num_instances, dtype=wp.vec4, device=device)
    if num_instances:
        wp.launch(
            kernel=wp_splat_vertices,
            dim=(num_instances, DRAW_VERTEX_COUNT),
            inputs=[points_2d, sorted_indices, clip_positions, local_coords, colors],
            device=device,
        )
    return clip_positions.numpy(), local_coords.numpy(), colors.numpy()


def rasterize(points_2d, sorted_indices, num_instances, width, height, background=(0.0, 0.0, 0.0), device=None):
    """Composite the sorted splats into a (height, width, 3) image, returns (image, alpha) wp.arrays."""
    device = device or DEVICE
    rendered_image = wp.zeros((height, width), dtype=wp.vec3, device=device)
    alpha_image = wp.zeros((height, width), dtype=float, device=device)
    wp.launch(
        kernel=wp_rasterize_splats,
        dim=(height, width),
        inputs=[
            points_2d,                               # points_2d
            sorted_indices,                          # sorted_indices
            int(num_instances),                      # num_instances
            wp.vec2(float(width), float(height)),    # viewport
            wp.vec3(*[float(c) for c in background]),  # background
            rendered_image,                          # rendered_image
            alpha_image,                             # alpha_image
        ],
        device=device,
    )
    return rendered_image, alpha_image
