from warp_splats.config import ConfigurationError, RenderParams, SHEncoding
from warp_splats.forward import Preprocessor, preprocess
from warp_splats.point_cloud import PointCloud
from warp_splats.renderer import GaussianRenderer

__version__ = "0.1.0"
