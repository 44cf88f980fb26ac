# processes/layer_rules.py

import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from slice_dfm.core.common_types import AggregateIssue, IssueType, LayerIssue, Rectangle
from slice_dfm.core.configuration import (
    IslandDetectionConfiguration, IssuesDetectionConfiguration, OverhangDetectionConfiguration,
    TouchingBoundDetectionConfiguration,
)
from slice_dfm.core.geometry import Contour, ContourGroup, ContourHierarchy
from slice_dfm.core.layers import Layer, LayerImage, LayerStack
from slice_dfm.core.raster import Raster, cross_kernel

logger = logging.getLogger(__name__)

# Newly exposed pixels must be brighter than this after subtracting the previous layer
OVERHANG_DIFFERENCE_THRESHOLD = 127


@dataclass
class LayerAnalysis:
    """Everything the per-layer pass produced for one layer."""
    layer_index: int
    issues: List[AggregateIssue] = field(default_factory=list)
    # Resin trap inputs, in analysis region (model bounding rectangle) coordinates
    external_contours: List[Contour] = field(default_factory=list)
    hollows: List[ContourGroup] = field(default_factory=list)


def _in_white_list(white_list: Optional[Sequence[int]], layer_index: int) -> bool:
    return white_list is None or layer_index in white_list

# --- Touching Bounds ---

def check_touching_bounds(layer: Layer, image: LayerImage,
                          config: TouchingBoundDetectionConfiguration) -> Optional[LayerIssue]:
    """Bright pixels inside the margin frame at the edge of the build area."""
    bounds = layer.bounding_rectangle
    width, height = image.source.width, image.source.height
    touches = (bounds.y < config.margin_top or bounds.bottom > height - config.margin_bottom
               or bounds.x < config.margin_left or bounds.right > width - config.margin_right)
    if bounds.is_empty or not touches:
        return None

    rows, cols = bounds.as_slices()
    window = image.source.data[rows, cols]
    ys = np.arange(bounds.y, bounds.bottom)[:, None]
    xs = np.arange(bounds.x, bounds.right)[None, :]
    in_frame = ((ys < config.margin_top) | (ys >= height - config.margin_bottom)
                | (xs < config.margin_left) | (xs >= width - config.margin_right))
    hits_y, hits_x = np.nonzero(in_frame & (window >= config.minimum_pixel_brightness))
    if hits_y.size == 0:
        return None
    points = zip((hits_x + bounds.x).tolist(), (hits_y + bounds.y).tolist())
    return LayerIssue.from_points(IssueType.TOUCHING_BOUND, layer, list(points))

# --- Overhangs ---

def compute_overhang_image(current: Raster, previous: Raster, kernel: np.ndarray, erode_iterations: int) -> Raster:
    """Pixels exposed on `current` but not on `previous`, eroded to keep only wide regions."""
    difference = current.subtract(previous).threshold(OVERHANG_DIFFERENCE_THRESHOLD)
    return difference.erode(kernel, erode_iterations)


def check_overhangs(layer: Layer, image: LayerImage, previous_image: LayerImage,
                    config: OverhangDetectionConfiguration,
                    kernel: np.ndarray) -> Tuple[List[LayerIssue], Raster]:
    """
    Finds regions of the layer that hang out past the previous layer.

    Returns:
        The overhang issues and the eroded overhang image (region of interest coordinates),
        which island confirmation reuses.
    """
    roi = image.roi_rectangle
    overhang_image = compute_overhang_image(image.roi, previous_image.roi, kernel, config.erode_iterations)
    if not overhang_image.has_nonzero():
        return [], overhang_image

    issues = []
    hierarchy = ContourHierarchy.from_raster(overhang_image, offset=roi.location)
    for group in hierarchy.positive_groups():
        if len(group.outer) < 3:
            continue
        rectangle = group.bounding_rectangle
        surviving = overhang_image.roi(rectangle.offset_by(-roi.x, -roi.y))
        pixel_count = surviving.bitwise_and(group.rasterize()).count_nonzero()
        if pixel_count < config.required_pixels_to_consider:
            continue
        issues.append(LayerIssue.from_contours(
            IssueType.OVERHANG, layer, group.to_point_lists(), rectangle, group.area, pixel_count
        ))
    return issues, overhang_image

# --- Islands ---

def check_islands(layer: Layer, image: LayerImage, previous_image: LayerImage,
                  config: IslandDetectionConfiguration, overhang_config: OverhangDetectionConfiguration,
                  overhang_issues: List[LayerIssue], overhang_image: Optional[Raster],
                  kernel: np.ndarray) -> List[LayerIssue]:
    """
    Finds connected components with too little of the previous layer under them.

    Args:
        layer: Layer being checked.
        image: Layer image cropped to the union of this and the previous layer bounds.
        previous_image: Previous layer cropped to the same rectangle.
        config: Island thresholds.
        overhang_config: Overhang thresholds, used by enhanced detection.
        overhang_issues: Overhangs found on this layer (empty if overhang detection did not run).
        overhang_image: Eroded overhang image of this layer, or None to compute it per island.
        kernel: Erosion kernel for the overhang image.
    """
    roi = image.roi_rectangle
    binary = image.roi.threshold(config.binary_threshold) if config.binary_threshold > 0 else image.roi
    components = binary.connected_components(8 if config.allow_diagonal_bonds else 4)
    if components.count <= 1:
        return []

    source = image.roi.data
    previous = previous_image.roi.data
    issues = []
    for label in range(1, components.count):
        x, y, w, h, area = (int(v) for v in components.stats[label][:5])
        if area < config.required_area_to_process_check:
            continue

        local = Rectangle(x=x, y=y, width=w, height=h)
        rows, cols = local.as_slices()
        label_mask = components.labels[rows, cols] == label
        pixel_mask = label_mask & (source[rows, cols] >= config.required_pixel_brightness_to_process_check)
        pixel_total = int(np.count_nonzero(pixel_mask))
        if pixel_total == 0:
            continue

        supporting = int(np.count_nonzero(pixel_mask & (previous[rows, cols] >= config.required_pixel_brightness_to_support)))
        required_support = max(1.0, pixel_total * config.required_pixels_to_support_multiplier)
        if supporting >= required_support:
            continue

        island_rectangle = local.offset_by(roi.x, roi.y)
        if config.enhanced_detection and supporting >= config.required_pixels_to_support and supporting >= required_support / 4:
            # Weakly supported: only an island if it also sits on a real overhang
            if overhang_config.enabled and not any(
                    overhang.bounding_rectangle.intersects_with(island_rectangle) for overhang in overhang_issues):
                continue
            if overhang_image is not None:
                overhang_window = overhang_image.roi(local).data
            else:
                overhang_window = compute_overhang_image(
                    image.roi.roi(local), previous_image.roi.roi(local), kernel, overhang_config.erode_iterations
                ).data
            if np.count_nonzero(label_mask & (overhang_window > 0)) < overhang_config.required_pixels_to_consider:
                continue

        ys, xs = np.nonzero(pixel_mask)
        points = zip((xs + island_rectangle.x).tolist(), (ys + island_rectangle.y).tolist())
        issues.append(LayerIssue.from_points(IssueType.ISLAND, layer, list(points), island_rectangle))
    return issues

# --- Per Layer Entry Point ---

def analyze_layer(stack: LayerStack, layer_index: int, config: IssuesDetectionConfiguration,
                  kernel: Optional[np.ndarray] = None) -> LayerAnalysis:
    """Runs every enabled per-layer check on one layer. Safe to call concurrently for different layers."""
    start_time = time.time()
    analysis = LayerAnalysis(layer_index)
    layer = stack[layer_index]
    if layer.is_empty:
        return analysis
    kernel = kernel if kernel is not None else cross_kernel()

    can_compare = layer_index > 0 and layer.position_z > stack.first_layer.position_z
    run_islands = config.island.enabled and can_compare and _in_white_list(config.island.white_list_layers, layer_index)
    run_overhangs = config.overhang.enabled and can_compare and _in_white_list(config.overhang.white_list_layers, layer_index)
    run_touching = config.touching_bound.enabled
    run_resin = config.resin_trap.enabled
    if not (run_islands or run_overhangs or run_touching or run_resin):
        return analysis

    if layer_index == 0:
        roi = stack.bounding_rectangle
    else:
        roi = layer.bounding_rectangle.union(stack[layer_index - 1].bounding_rectangle)
    image = stack.get_layer_image(layer_index, roi)
    layer_issues: List[LayerIssue] = []

    if run_touching:
        touching = check_touching_bounds(layer, image, config.touching_bound)
        if touching is not None:
            layer_issues.append(touching)

    if run_islands or run_overhangs:
        previous_image = stack.get_layer_image(layer_index - 1, image.roi_rectangle)
        overhangs: List[LayerIssue] = []
        overhang_image = None
        if run_overhangs:
            overhangs, overhang_image = check_overhangs(layer, image, previous_image, config.overhang, kernel)
        islands: List[LayerIssue] = []
        if run_islands:
            islands = check_islands(layer, image, previous_image, config.island, config.overhang,
                                    overhangs, overhang_image, kernel)
        if islands and not config.overhang.independent_from_islands:
            overhangs = []
        layer_issues.extend(islands)
        layer_issues.extend(overhangs)

    analysis.issues = [AggregateIssue.from_issues(issue.issue_type, [issue]) for issue in layer_issues]

    if run_resin:
        region = stack.get_layer_image(layer_index, stack.bounding_rectangle).roi
        threshold = config.resin_trap.binary_threshold
        binary = region.threshold(threshold) if threshold > 0 else region
        hierarchy = ContourHierarchy.from_raster(binary)
        analysis.external_contours = hierarchy.external_contours()
        analysis.hollows = hierarchy.negative_groups()

    logger.debug(f"Layer {layer_index} analyzed in {time.time() - start_time:.3f}s: "
                 f"{len(analysis.issues)} issue(s), {len(analysis.hollows)} hollow(s)")
    return analysis
