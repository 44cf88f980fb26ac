# core/__init__.py
# This file makes the 'core' directory a Python package.

from . import common_types
from . import configuration
from . import exceptions
from . import geometry
from . import layers
from . import progress
from . import raster
from . import utils

__all__ = [
    "common_types",
    "configuration",
    "exceptions",
    "geometry",
    "layers",
    "progress",
    "raster",
    "utils",
]
