# testing/test_layer_rules.py

import logging

import numpy as np
import pytest

from slice_dfm.core.common_types import IssueType, Rectangle
from slice_dfm.core.raster import Raster, cross_kernel
from slice_dfm.processes.detector import IssueDetector
from slice_dfm.processes.layer_rules import analyze_layer, compute_overhang_image
from slice_dfm.testing import generate_test_stacks as stacks

logger = logging.getLogger(__name__)

# --- Test Helper Function ---
def issues_of(issues: list, issue_type: IssueType) -> list:
    return [issue for issue in issues if issue.issue_type == issue_type]

# --- Islands ---

@pytest.mark.parametrize("supporting_pixels, is_island", [(0, True), (2, True), (3, False), (5, False)])
def test_island_support_threshold(supporting_pixels, is_island, make_stack, only):
    # 9 pixel block, multiplier 0.25: 2.25 supporting pixels are required
    stack = make_stack(stacks.island_stack(supporting_pixels))
    issues = IssueDetector(stack).detect(only("island"))
    islands = issues_of(issues, IssueType.ISLAND)
    assert bool(islands) == is_island, f"{supporting_pixels} supporting pixels: {issues}"
    if is_island:
        island = islands[0]
        assert island.start_layer_index == 1 and island.end_layer_index == 1
        assert island.pixel_count == 9
        assert island.first_issue.points is not None and (8, 8) in island.first_issue.points


def test_first_layer_is_never_an_island(make_stack, only):
    base = stacks.blank_layer(20)
    base[3:6, 3:6] = stacks.WHITE
    stack = make_stack([base, base.copy()])
    analysis = analyze_layer(stack, 0, only("island"))
    assert analysis.issues == []


def test_island_on_unchanged_layer_is_supported(make_stack, only):
    layer = stacks.square_layer(20, 4, 4, 6, 6)
    stack = make_stack([layer, layer.copy(), layer.copy()])
    assert IssueDetector(stack).detect(only("island")) == []


def test_island_white_list_limits_checked_layers(make_stack, only):
    stack = make_stack(stacks.island_stack(0))
    config = only("island")
    config.island.white_list_layers = [0]
    assert IssueDetector(stack).detect(config) == []


# 12 of 100 pixels supported: under the 25 required, but enough to ask for overhang evidence
@pytest.mark.parametrize("erode_iterations, is_island", [(40, False), (2, True)])
def test_weakly_supported_island_needs_local_overhang(erode_iterations, is_island, make_stack, only):
    stack = make_stack(stacks.weak_support_stack(supporting_pixels=12))
    config = only("island")
    config.overhang.erode_iterations = erode_iterations  # the overhang image is computed per island
    islands = issues_of(IssueDetector(stack).detect(config), IssueType.ISLAND)
    assert [island.pixel_count for island in islands] == ([100] if is_island else [])


@pytest.mark.parametrize("erode_iterations, is_island", [(40, False), (2, True)])
def test_weakly_supported_island_needs_reported_overhang(erode_iterations, is_island, make_stack, only):
    stack = make_stack(stacks.weak_support_stack(supporting_pixels=12))
    config = only("island", "overhang")
    config.overhang.erode_iterations = erode_iterations
    issues = IssueDetector(stack).detect(config)
    overhangs = issues_of(issues, IssueType.OVERHANG)
    islands = issues_of(issues, IssueType.ISLAND)
    assert bool(overhangs) == is_island
    assert len(islands) == (1 if is_island else 0)
    if is_island:
        assert overhangs[0].bounding_rectangle.intersects_with(islands[0].bounding_rectangle)


def test_weakly_supported_island_without_enhanced_detection(make_stack, only):
    stack = make_stack(stacks.weak_support_stack(supporting_pixels=12))
    config = only("island")
    config.island.enhanced_detection = False
    assert len(issues_of(IssueDetector(stack).detect(config), IssueType.ISLAND)) == 1
    # Below the enhanced detection floor the support ratio alone decides
    config.island.enhanced_detection = True
    stack = make_stack(stacks.weak_support_stack(supporting_pixels=9))
    assert len(issues_of(IssueDetector(stack).detect(config), IssueType.ISLAND)) == 1

# --- Overhangs ---

def test_overhang_image_erodes_new_pixels():
    kernel = cross_kernel()
    previous = Raster.zeros(20, 20)
    current = Raster(stacks.square_layer(20, 4, 4, 12, 12))
    assert compute_overhang_image(current, previous, kernel, 0).count_nonzero() == 144
    assert compute_overhang_image(current, previous, kernel, 5).count_nonzero() == 4
    assert compute_overhang_image(current, previous, kernel, 6).count_nonzero() == 0


@pytest.mark.parametrize("erode_iterations, required_pixels, expected", [(5, 1, 1), (5, 50, 0), (6, 1, 0)])
def test_overhang_erosion_gate(erode_iterations, required_pixels, expected, make_stack, only):
    stack = make_stack(stacks.overhang_stack())
    config = only("overhang")
    config.overhang.erode_iterations = erode_iterations
    config.overhang.required_pixels_to_consider = required_pixels
    overhangs = issues_of(IssueDetector(stack).detect(config), IssueType.OVERHANG)
    assert len(overhangs) == expected
    if expected:
        overhang = overhangs[0]
        assert overhang.start_layer_index == 1
        assert overhang.first_issue.contours
        assert overhang.bounding_rectangle.intersects_with(Rectangle(x=30, y=30, width=12, height=12))


def test_islands_suppress_overhangs_when_not_independent(make_stack, only):
    base = stacks.square_layer(60, 5, 5, 10, 10)
    top = base.copy()
    top[30:42, 30:42] = stacks.WHITE  # unsupported: an island and an overhang
    stack = make_stack([base, top])
    config = only("island", "overhang")
    config.overhang.erode_iterations = 2
    issues = IssueDetector(stack).detect(config)
    assert issues_of(issues, IssueType.ISLAND) and issues_of(issues, IssueType.OVERHANG)

    config.overhang.independent_from_islands = False
    issues = IssueDetector(stack).detect(config)
    assert issues_of(issues, IssueType.ISLAND)
    assert not issues_of(issues, IssueType.OVERHANG)

# --- Touching Bounds ---

def test_touching_bounds_reports_frame_pixels(make_stack, only):
    layer = stacks.square_layer(20, 0, 8, 4, 4)  # columns 0-3 sit inside the 5 px margin
    stack = make_stack([layer])
    touching = issues_of(IssueDetector(stack).detect(only("touching_bound")), IssueType.TOUCHING_BOUND)
    assert len(touching) == 1
    assert touching[0].pixel_count == 16
    assert all(x < 5 for x, _ in touching[0].first_issue.points)


def test_touching_bounds_ignores_dim_and_inner_pixels(make_stack, only):
    layer = stacks.square_layer(20, 6, 6, 8, 8)
    layer[10, 0] = 100  # below the brightness threshold
    stack = make_stack([layer])
    assert IssueDetector(stack).detect(only("touching_bound")) == []


def test_touching_bounds_partial_frame_overlap(make_stack, only):
    layer = stacks.square_layer(20, 3, 8, 6, 2)  # columns 3-4 are in the frame, 5-8 are not
    stack = make_stack([layer])
    touching = issues_of(IssueDetector(stack).detect(only("touching_bound")), IssueType.TOUCHING_BOUND)
    assert len(touching) == 1
    points = touching[0].first_issue.points
    assert sorted({x for x, _ in points}) == [3, 4]
    assert len(points) == 4

# --- Per Layer Analysis ---

def test_analyze_layer_collects_hollows(make_stack, only):
    stack = make_stack(stacks.sealed_hole_stack(layers=3))
    analysis = analyze_layer(stack, 1, only("resin_trap"))
    assert len(analysis.external_contours) == 1
    assert len(analysis.hollows) == 1
    # Hollows are in model bounds coordinates
    hollow = analysis.hollows[0].bounding_rectangle
    assert hollow.x >= 0 and hollow.right <= stack.bounding_rectangle.width


def test_analyze_empty_layer_is_blank(make_stack, only):
    stack = make_stack(stacks.empty_layers_stack("XEX"))
    analysis = analyze_layer(stack, 1, only("island", "overhang", "resin_trap"))
    assert analysis.issues == [] and analysis.hollows == [] and analysis.external_contours == []
    assert np.count_nonzero(stack[1].raster.data) == 0
