# slice_dfm/__init__.py

# This file makes the 'slice_dfm' directory a Python package.

from . import core
from . import processes

__version__ = "0.1.0"

__all__ = [
    "core",
    "processes",
]
