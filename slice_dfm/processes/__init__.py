# processes/__init__.py

# This file makes the 'processes' directory a Python package.

from . import air_map
from . import classifier
from . import detector
from . import layer_rules
from . import stack_rules
from . import trap_grouping

# Import commonly-used items from submodules for convenience
from .detector import IssueDetector, get_drill_location

__all__ = [
    "air_map",
    "classifier",
    "detector",
    "layer_rules",
    "stack_rules",
    "trap_grouping",
    "IssueDetector",
    "get_drill_location",
]
