import numpy as np
import warp as wp
from loguru import logger

from warp_splats.config import DEVICE, SHEncoding, check_sh_degree
from warp_splats.forward import Preprocessor
from warp_splats.raster import rasterize
from warp_splats.sort import sort_splats


class GaussianRenderer:
    """Renders a splat dataset frame by frame: preprocess, depth sort, rasterize.

    The renderer is built for one SH encoding and degree; clouds with another
    encoding are rejected when they are bound.
    """

    def __init__(self, sh_encoding="float", max_sh_degree=3, device=None) -> None:
        self.sh_encoding = SHEncoding.parse(sh_encoding)
        self.max_sh_degree = check_sh_degree(max_sh_degree)
        self.device = device or DEVICE
        self.preprocessor = Preprocessor(self.sh_encoding, self.max_sh_degree, self.device)
        self._capacity = -1
        self._points_2d = None
        self._sort_buffers = None

    def _buffers(self, num_points):
        if num_points != self._capacity:
            self._points_2d, self._sort_buffers = self.preprocessor.allocate(num_points)
            self._capacity = num_points
        return self._points_2d, self._sort_buffers

    def render(
        self,
        cloud,                     # PointCloud to draw
        camera,                    # CameraUniforms of the frame
        width,                     # int, width of output image
        height,                    # int, height of output image
        background=(0.0, 0.0, 0.0),  # color of background, default black
        debug=False,
    ):
        points_2d, sort_buffers = self._buffers(cloud.num_points)

        # run preprocessing per splat: cull, project, shade and compact
        logger.info(f"Preprocessing {cloud.num_points} splats...")
        self.preprocessor.run(cloud, camera, points_2d, sort_buffers)
        num_visible = int(sort_buffers.sort_infos.numpy()[0])
        draw_args = sort_buffers.draw_args.numpy()
        dispatch_args = sort_buffers.dispatch_args.numpy()

        if debug:
            logger.debug(f"Visible splats: {num_visible} / {cloud.num_points}")
            logger.debug(f"Draw args: {draw_args.tolist()}, sort dispatch: {dispatch_args.tolist()}")
            if num_visible:
                depths = sort_buffers.depth_keys.numpy()[:num_visible]
                logger.debug(f"Depth key range: [{depths.min():.4f}, {depths.max():.4f}]")

        # sort keys by depth, nearest first
        sort_splats(sort_buffers, num_visible, int(dispatch_args[0]))

        logger.info(f"Rasterizing {num_visible} splats at {width}x{height}...")
        rendered_image, alpha_image = rasterize(
            points_2d,
            sort_buffers.indices,
            int(draw_args[1]),
            width,
            height,
            background,
            self.device,
        )
        wp.synchronize_device(self.device)

        return rendered_image.numpy().astype(np.float32), {
            "points_2d": points_2d,
            "sort_buffers": sort_buffers,
            "num_visible": num_visible,
            "draw_args": draw_args,
            "dispatch_args": dispatch_args,
            "alpha": alpha_image.numpy(),
        }
