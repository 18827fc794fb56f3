import json
import math

import numpy as np
import warp as wp
from loguru import logger

from warp_splats.structures import CameraUniforms

# OpenGL conventions: camera looks down -z, y up, NDC depth in [-1, 1]


def look_at(position, target, up=(0.0, 1.0, 0.0)):
    """World to camera matrix for a camera at ``position`` looking at ``target``."""
    position = np.asarray(position, dtype=np.float64)
    forward = np.asarray(target, dtype=np.float64) - position
    forward = forward / np.linalg.norm(forward)

    right = np.cross(forward, np.asarray(up, dtype=np.float64))
    right = right / np.linalg.norm(right)
    new_up = np.cross(right, forward)

    view = np.eye(4)
    view[0, :3] = right
    view[1, :3] = new_up
    view[2, :3] = -forward
    view[0, 3] = -np.dot(right, position)
    view[1, 3] = -np.dot(new_up, position)
    view[2, 3] = np.dot(forward, position)
    return view.astype(np.float32)


def projection_from_focal(fx, fy, width, height, znear=0.01, zfar=100.0):
    P = np.zeros((4, 4))
    P[0, 0] = 2.0 * fx / width
    P[1, 1] = 2.0 * fy / height
    P[2, 2] = (zfar + znear) / (znear - zfar)
    P[2, 3] = 2.0 * zfar * znear / (znear - zfar)
    P[3, 2] = -1.0
    return P.astype(np.float32)


def perspective(fovy, width, height, znear=0.01, zfar=100.0):
    fy = height / (2.0 * math.tan(fovy * 0.5))
    return projection_from_focal(fy, fy, width, height, znear, zfar)


def make_camera(view, proj, width, height, focal=None):
    """Build the per-frame camera uniforms.

    ``focal`` defaults to the pixel focal lengths implied by ``proj``.
    """
    view = np.asarray(view, dtype=np.float32)
    proj = np.asarray(proj, dtype=np.float32)
    if focal is None:
        focal = (proj[0, 0] * width * 0.5, proj[1, 1] * height * 0.5)

    camera = CameraUniforms()
    camera.view = wp.mat44(view.flatten())
    camera.view_inv = wp.mat44(np.linalg.inv(view).astype(np.float32).flatten())
    camera.proj = wp.mat44(proj.flatten())
    camera.proj_inv = wp.mat44(np.linalg.inv(proj).astype(np.float32).flatten())
    camera.viewport = wp.vec2(float(width), float(height))
    camera.focal = wp.vec2(float(focal[0]), float(focal[1]))
    return camera


def load_camera(camera_info, znear=0.01, zfar=100.0):
    """Load camera parameters from one entry of a 3DGS cameras.json"""
    width = int(camera_info["width"])
    height = int(camera_info["height"])
    fx = float(camera_info["fx"])
    fy = float(camera_info["fy"])

    camera_to_world = np.eye(4)
    camera_to_world[:3, :3] = np.asarray(camera_info["rotation"], dtype=np.float64)
    camera_to_world[:3, 3] = np.asarray(camera_info["position"], dtype=np.float64)
    # Change from COLMAP (Y down, Z forward) to OpenGL camera axes (Y up, Z back)
    camera_to_world[:3, 1:3] *= -1

    view_matrix = np.linalg.inv(camera_to_world).astype(np.float32)
    proj_matrix = projection_from_focal(fx, fy, width, height, znear, zfar)

    return {
        'id': camera_info.get("id"),
        'img_name': camera_info.get("img_name"),
        'split': camera_info.get("split"),
        'view_matrix': view_matrix,
        'proj_matrix': proj_matrix,
        'camera_center': camera_to_world[:3, 3].astype(np.float32),
        'fx': fx,
        'fy': fy,
        'width': width,
        'height': height,
    }


def load_cameras_json(path, split=None):
    """Load all cameras of a cameras.json, optionally only those of one split"""
    with open(path, 'r') as f:
        cameras = [load_camera(info) for info in json.load(f)]
    if split is not None:
        cameras = [cam for cam in cameras if cam['split'] == split]
    logger.info(f"Loaded {len(cameras)} cameras from {path}")
    return cameras
