import os

import numpy as np
from loguru import logger
from plyfile import PlyData, PlyElement

from warp_splats.config import num_sh_coeffs
from warp_splats.point_cloud import PointCloud


def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def inverse_sigmoid(x):
    x = np.clip(x, 1e-6, 1.0 - 1e-6)
    return np.log(x / (1.0 - x))


def read_ply_gaussians(filepath):
    """Read the raw Gaussians of a 3DGS PLY file.

    Returns a dict of activated attributes: positions (N, 3), scales (N, 3),
    rotations (N, 4) as unit quaternions (w, x, y, z), opacities (N,) and
    sh_coeffs (N, n_coeffs, 3).
    """
    plydata = PlyData.read(filepath)
    vertices = plydata['vertex']
    names = [p.name for p in vertices.properties]

    positions = np.column_stack([vertices['x'], vertices['y'], vertices['z']]).astype(np.float32)
    opacities = sigmoid(np.asarray(vertices['opacity'], dtype=np.float32))

    scale_names = sorted([n for n in names if n.startswith('scale_')], key=lambda n: int(n.split('_')[-1]))
    scales = np.exp(np.column_stack([vertices[n] for n in scale_names]).astype(np.float32))

    # rot_0 is the real part
    rot_names = sorted([n for n in names if n.startswith('rot_')], key=lambda n: int(n.split('_')[-1]))
    rotations = np.column_stack([vertices[n] for n in rot_names]).astype(np.float32)
    rotations = rotations / np.linalg.norm(rotations, axis=1, keepdims=True)

    features_dc = np.column_stack([vertices['f_dc_0'], vertices['f_dc_1'], vertices['f_dc_2']]).astype(np.float32)
    rest_names = sorted([n for n in names if n.startswith('f_rest_')], key=lambda n: int(n.split('_')[-1]))
    num_points = positions.shape[0]
    if rest_names:
        if len(rest_names) % 3:
            raise ValueError(f"{filepath}: {len(rest_names)} f_rest properties is not a multiple of 3")
        # stored channel-major: all R coefficients, then G, then B
        features_rest = np.column_stack([vertices[n] for n in rest_names]).astype(np.float32)
        features_rest = features_rest.reshape(num_points, 3, -1).transpose(0, 2, 1)
    else:
        features_rest = np.zeros((num_points, 0, 3), dtype=np.float32)
    sh_coeffs = np.concatenate([features_dc[:, None, :], features_rest], axis=1)

    return {
        'positions': positions,
        'scales': scales,
        'rotations': rotations,
        'opacities': opacities.astype(np.float32),
        'sh_coeffs': sh_coeffs,
    }


def load_ply(filepath, max_sh_degree=None, sh_encoding="float", scale_modifier=1.0):
    """Load a 3DGS PLY file into a PointCloud, truncating SH to ``max_sh_degree``."""
    gaussians = read_ply_gaussians(filepath)
    sh_coeffs = gaussians['sh_coeffs']
    stored_degree = int(round(np.sqrt(sh_coeffs.shape[1]))) - 1
    if max_sh_degree is None:
        max_sh_degree = stored_degree
    if num_sh_coeffs(max_sh_degree) > sh_coeffs.shape[1]:
        logger.warning(f"{filepath} stores SH degree {stored_degree}, using it instead of {max_sh_degree}")
        max_sh_degree = stored_degree

    logger.info(f"Loaded {sh_coeffs.shape[0]} Gaussians from {filepath} (SH degree {stored_degree})")
    return PointCloud.from_gaussians(
        gaussians['positions'],
        gaussians['opacities'],
        gaussians['scales'],
        gaussians['rotations'],
        sh_coeffs,
        sh_encoding=sh_encoding,
        max_sh_degree=max_sh_degree,
        scale_modifier=scale_modifier,
    )


# Function to save Gaussians to a PLY file
def save_ply(filepath, positions, scales, rotations, opacities, sh_coeffs):
    """Write activated Gaussians in the 3DGS PLY layout (log scales, logit opacities)."""
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    num_points = positions.shape[0]
    scales = np.log(np.asarray(scales, dtype=np.float32).reshape(num_points, 3))
    rotations = np.asarray(rotations, dtype=np.float32).reshape(num_points, 4)
    opacities = inverse_sigmoid(np.asarray(opacities, dtype=np.float32).reshape(num_points))
    sh_coeffs = np.asarray(sh_coeffs, dtype=np.float32).reshape(num_points, -1, 3)
    features_dc = sh_coeffs[:, 0, :]
    features_rest = sh_coeffs[:, 1:, :].transpose(0, 2, 1).reshape(num_points, -1)

    # Define the structure of the PLY file
    vertex_type = [
        ('x', 'f4'), ('y', 'f4'), ('z', 'f4'),
        ('f_dc_0', 'f4'), ('f_dc_1', 'f4'), ('f_dc_2', 'f4'),
    ]
    vertex_type.extend([(f'f_rest_{i}', 'f4') for i in range(features_rest.shape[1])])
    vertex_type.append(('opacity', 'f4'))
    vertex_type.extend([('scale_0', 'f4'), ('scale_1', 'f4'), ('scale_2', 'f4')])
    vertex_type.extend([('rot_0', 'f4'), ('rot_1', 'f4'), ('rot_2', 'f4'), ('rot_3', 'f4')])

    attributes = np.concatenate([
        positions, features_dc, features_rest, opacities[:, None], scales, rotations
    ], axis=1)
    vertex_array = np.empty(num_points, dtype=vertex_type)
    vertex_array[:] = list(map(tuple, attributes))
    el = PlyElement.describe(vertex_array, 'vertex')

    # Create directory if it doesn't exist
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    PlyData([el], text=False).write(filepath)
    logger.info(f"Point cloud saved to {filepath}")
