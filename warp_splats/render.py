import argparse
import os

import imageio
import numpy as np
from loguru import logger
from tqdm import tqdm

from warp_splats.config import RenderParams, SHEncoding
from warp_splats.point_cloud import PointCloud
from warp_splats.renderer import GaussianRenderer
from warp_splats.utils.camera_utils import load_cameras_json, look_at, make_camera, perspective
from warp_splats.utils.point_cloud_utils import load_ply


def setup_example_scene(image_width=800, image_height=600, fovy=0.8, znear=0.01, zfar=100.0,
                        sh_encoding="float", max_sh_degree=3):
    """Setup example scene with camera and Gaussians for testing and debugging"""
    view_matrix = look_at(position=(0.0, 0.0, 5.0), target=(0.0, 0.0, 0.0))
    proj_matrix = perspective(fovy, image_width, image_height, znear, zfar)

    pts = np.array([[-1, -1, -2], [0, 1, -2], [1, -1, -2], [0, 0, 0]], dtype=np.float32)
    n = len(pts)

    # Hard-coded SHs for debugging
    shs = np.array([[0.71734341, 0.91905449, 0.49961076],
                    [0.08068483, 0.82132256, 0.01301602],
                    [0.8335743, 0.31798138, 0.19709007],
                    [0.82589597, 0.28206231, 0.790489],
                    [0.24008527, 0.21312673, 0.53132892],
                    [0.19493135, 0.37989934, 0.61886235],
                    [0.98106522, 0.28960672, 0.57313965],
                    [0.92623716, 0.46034381, 0.5485369],
                    [0.81660616, 0.7801104, 0.27813915],
                    [0.96114063, 0.69872817, 0.68313804],
                    [0.95464185, 0.21984855, 0.92912192],
                    [0.23503135, 0.29786121, 0.24999751],
                    [0.29844887, 0.6327788, 0.05423596],
                    [0.08934335, 0.11851827, 0.04186001],
                    [0.59331831, 0.919777, 0.71364335],
                    [0.83377388, 0.40242542, 0.8792624]] * n, dtype=np.float32).reshape(n, 16, 3)
    # keep the higher bands small so every encoding can hold them
    shs[:, 1:] *= 0.4

    opacities = np.full(n, 0.8, dtype=np.float32)
    scales = np.full((n, 3), 0.3, dtype=np.float32)
    scales[3] = (0.8, 0.2, 0.2)

    # Identity quaternions (w, x, y, z)
    rotations = np.zeros((n, 4), dtype=np.float32)
    rotations[:, 0] = 1.0

    cloud = PointCloud.from_gaussians(pts, opacities, scales, rotations, shs,
                                      sh_encoding=sh_encoding, max_sh_degree=max_sh_degree)
    camera_params = {
        'img_name': 'example',
        'view_matrix': view_matrix,
        'proj_matrix': proj_matrix,
        'width': image_width,
        'height': image_height,
    }
    return cloud, [camera_params]


def save_image(image, filepath):
    image = np.clip(image, 0.0, 1.0)
    imageio.imwrite(filepath, (image * 255.0 + 0.5).astype(np.uint8))


def render_cameras(renderer, cloud, cameras, output_dir, background, width=None, height=None):
    """Render ``cloud`` from every camera into ``output_dir``, returns the written paths."""
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for i, camera_params in enumerate(tqdm(cameras, desc="Rendering")):
        w = width or camera_params['width']
        h = height or camera_params['height']
        proj_matrix = camera_params['proj_matrix']
        focal = None
        if 'fx' in camera_params:
            # keep the field of view when the resolution is overridden
            focal = (camera_params['fx'] * w / camera_params['width'],
                     camera_params['fy'] * h / camera_params['height'])
        camera = make_camera(camera_params['view_matrix'], proj_matrix, w, h, focal=focal)

        image, buffers = renderer.render(cloud, camera, w, h, background)
        name = camera_params.get('img_name') or f"{i:05d}"
        filepath = os.path.join(output_dir, f"{name}.png")
        save_image(image, filepath)
        logger.debug(f"{filepath}: {buffers['num_visible']} visible splats")
        paths.append(filepath)
    return paths


def main(argv=None):
    parser = argparse.ArgumentParser(description="Render Gaussian splats")
    parser.add_argument("--input_path", type=str, default=None,
                        help="Path to a 3DGS PLY file")
    parser.add_argument("--cameras", type=str, default=None,
                        help="Path to a cameras.json, defaults to cameras.json next to the PLY file")
    parser.add_argument("--split", type=str, default=None, help="Only render cameras of this split")
    parser.add_argument("--output_dir", type=str, default="renders", help="Output directory")
    parser.add_argument("--max_sh_deg", type=int, default=RenderParams.max_sh_degree,
                        help="Highest SH degree to evaluate")
    parser.add_argument("--encoding", type=str, default=RenderParams.sh_encoding,
                        choices=[e.name.lower() for e in SHEncoding], help="SH table encoding")
    parser.add_argument("--width", type=int, default=None, help="Image width")
    parser.add_argument("--height", type=int, default=None, help="Image height")
    parser.add_argument("--debug", action="store_true", help="Enable additional debug output")
    args = parser.parse_args(argv)

    RenderParams.update(max_sh_degree=args.max_sh_deg, sh_encoding=args.encoding)
    if args.width:
        RenderParams.update(width=args.width)
    if args.height:
        RenderParams.update(height=args.height)
    params = RenderParams.get_config_dict()
    logger.info(f"Render parameters: {params}")

    if args.input_path:
        cloud = load_ply(args.input_path, max_sh_degree=params['max_sh_degree'],
                         sh_encoding=params['sh_encoding'], scale_modifier=params['scale_modifier'])
        cameras_path = args.cameras or os.path.join(os.path.dirname(args.input_path), "cameras.json")
        cameras = load_cameras_json(cameras_path, split=args.split)
    else:
        cloud, cameras = setup_example_scene(params['width'], params['height'], params['fovy'],
                                             params['znear'], params['zfar'],
                                             params['sh_encoding'], params['max_sh_degree'])
        logger.info(f"Using {cloud.num_points} example Gaussians")

    renderer = GaussianRenderer(params['sh_encoding'], min(params['max_sh_degree'], cloud.sh_degree))
    paths = render_cameras(renderer, cloud, cameras, args.output_dir, params['background_color'],
                           args.width, args.height)
    logger.info(f"Rendered {len(paths)} images to {args.output_dir}")
    return paths


if __name__ == "__main__":
    main()
