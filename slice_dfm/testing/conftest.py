# testing/conftest.py

import logging
from pathlib import Path

import pytest

from slice_dfm.core.configuration import IssuesDetectionConfiguration
from slice_dfm.core.layers import LayerStack
from slice_dfm.testing import generate_test_stacks as stacks

logger = logging.getLogger(__name__)

# --- Fixtures ---

@pytest.fixture(scope="session")
def make_stack():
    """Builds a LayerStack from a list of layer arrays with the test layer height and pixel size."""
    def _builder(volume, **kwargs) -> LayerStack:
        kwargs.setdefault("layer_height", stacks.LAYER_HEIGHT)
        kwargs.setdefault("pixel_size_mm", stacks.PIXEL_SIZE)
        return LayerStack.from_array(volume, **kwargs)
    return _builder


@pytest.fixture
def only():
    """Detection settings with every detector off except the named ones."""
    def _config(*names: str) -> IssuesDetectionConfiguration:
        config = IssuesDetectionConfiguration().disable_all()
        for name in names:
            getattr(config, name).enabled = True
        return config
    return _config


@pytest.fixture
def sealed_hole_stack(make_stack) -> LayerStack:
    return make_stack(stacks.sealed_hole_stack(layers=8))


@pytest.fixture
def suction_cup_stack(make_stack) -> LayerStack:
    return make_stack(stacks.suction_cup_stack(layers=16, floor_layers=4))


@pytest.fixture
def empty_layers_stack(make_stack) -> LayerStack:
    return make_stack(stacks.empty_layers_stack("EEXEXEE"))


@pytest.fixture(scope="session")
def benchmark_dir(tmp_path_factory) -> Path:
    directory = tmp_path_factory.mktemp("benchmark_stacks")
    stacks.write_benchmark_stacks(directory)
    logger.info(f"Benchmark stacks written to {directory}")
    return directory
