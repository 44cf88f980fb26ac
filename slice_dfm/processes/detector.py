# processes/detector.py

import time
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence

from slice_dfm.core.common_types import (
    AggregateIssue, DetectionReport, IssueType, LayerIssue, PixelDrainHole, Point, Rectangle,
    determine_status, sort_issues,
)
from slice_dfm.core.configuration import IssuesDetectionConfiguration
from slice_dfm.core.exceptions import DetectionError, SliceDFMError
from slice_dfm.core.geometry import ContourGroup
from slice_dfm.core.layers import LayerStack
from slice_dfm.core.progress import OperationProgress
from slice_dfm.core.raster import Raster, cross_kernel
from slice_dfm.processes.air_map import AirMapPropagator
from slice_dfm.processes.classifier import classify_resin_traps, classify_suction_cups
from slice_dfm.processes.layer_rules import LayerAnalysis, analyze_layer
from slice_dfm.processes.stack_rules import check_empty_layers, check_print_height
from slice_dfm.processes.trap_grouping import TrapGrouper

logger = logging.getLogger(__name__)


def get_drill_location(issue: LayerIssue, radius: int) -> Optional[Point]:
    """
    Where to drill a vent through a suction cup layer.

    Returns:
        The centroid of the issue's outer contour if a disc of `radius` centred there lies
        entirely inside the contour region, otherwise None.
    """
    if not issue.contours:
        return None
    group = ContourGroup.from_point_lists(issue.contours)
    centroid = group.centroid
    if centroid is None:
        return None
    cx, cy = centroid
    disc_rectangle = Rectangle(x=cx - radius, y=cy - radius, width=2 * radius + 1, height=2 * radius + 1)
    canvas = group.bounding_rectangle.union(disc_rectangle)
    region = group.rasterize(canvas)
    disc = Raster.zeros(canvas.width, canvas.height).draw_circle((cx - canvas.x, cy - canvas.y), radius)
    if disc.subtract(region).has_nonzero():
        return None
    return centroid


class IssueDetector:
    """
    Finds printability issues on a layer stack and keeps the current result set.

    Args:
        stack: The layer stack to analyze.
        configuration: Default detection settings, used when `detect()` gets none.
    """

    def __init__(self, stack: LayerStack, configuration: Optional[IssuesDetectionConfiguration] = None):
        self.stack = stack
        self.configuration = configuration or IssuesDetectionConfiguration()
        self.issues: List[AggregateIssue] = []
        self.ignored_issues: List[AggregateIssue] = []
        self.last_run_cancelled = False
        self.last_run_time_sec = 0.0

    # --- Detection ---

    def detect(self, configuration: Optional[IssuesDetectionConfiguration] = None,
               progress: Optional[OperationProgress] = None,
               max_workers: Optional[int] = None) -> List[AggregateIssue]:
        """
        Runs every enabled detector and replaces the current result set.

        Args:
            configuration: Detection settings (defaults to the detector's own).
            progress: Progress/pause/cancel handle. On cancellation the issues merged so far are returned.
            max_workers: Thread pool size for the per-layer work (None lets the executor decide).

        Returns:
            Issues sorted by type, start layer and descending area, without ignored issues.

        Raises:
            DetectionError: If a detector fails unexpectedly. The result set is left empty.
        """
        config = configuration or self.configuration
        progress = progress or OperationProgress()
        start_time = time.time()
        self.issues = []
        self.last_run_cancelled = False

        if self.stack.is_partially_decoded:
            logger.warning("Layer stack is only partially decoded, layer images are required for issue detection.")
            return []

        for message in config.validate_settings(self.stack.count):
            logger.info(f"Detection settings: {message}")
        logger.info(f"Detecting issues on {self.stack.count} layer(s), model bounds {self.stack.bounding_rectangle}")

        try:
            issues, cancelled = self._run(config, progress, max_workers)
        except SliceDFMError as e:
            logger.error(f"Issue detection failed: {e}", exc_info=True)
            raise
        except Exception as e:
            logger.exception("Unexpected error during issue detection:")
            raise DetectionError(f"Issue detection failed: {e}") from e

        self.issues = self._finalize(issues)
        self.last_run_cancelled = cancelled
        self.last_run_time_sec = time.time() - start_time
        logger.info(f"Issue detection {'cancelled' if cancelled else 'completed'} in {self.last_run_time_sec:.3f}s, "
                    f"{len(self.issues)} issue(s).")
        return list(self.issues)

    def _run(self, config: IssuesDetectionConfiguration, progress: OperationProgress,
             max_workers: Optional[int]):
        merged: List[AggregateIssue] = []
        merged.extend(check_print_height(self.stack, config.print_height))
        merged.extend(check_empty_layers(self.stack, config.empty_layer))
        if progress.checkpoint():
            return merged, True

        per_layer = (config.island.enabled or config.overhang.enabled
                     or config.touching_bound.enabled or config.resin_trap.enabled)
        if not per_layer:
            return merged, False

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            analyses = self._analyze_layers(range(self.stack.count), config, progress, executor)
            for analysis in analyses:
                if analysis is not None:
                    merged.extend(analysis.issues)
            if any(analysis is None for analysis in analyses) or progress.is_cancellation_requested:
                return merged, True

            if config.resin_trap.enabled and not self.stack.bounding_rectangle.is_empty:
                trap_issues = self._detect_resin_traps(analyses, config, progress, executor)
                if trap_issues is None:
                    return merged, True
                merged.extend(trap_issues)
        return merged, False

    def _analyze_layers(self, layer_indices: Sequence[int], config: IssuesDetectionConfiguration,
                        progress: OperationProgress, executor: Executor) -> List[Optional[LayerAnalysis]]:
        """Per-layer analysis, one task per layer. Cancelled layers come back as None."""
        start_time = time.time()
        kernel = cross_kernel()
        progress.reset("Layers processed", len(layer_indices))

        def task(layer_index: int) -> Optional[LayerAnalysis]:
            if progress.checkpoint():
                return None
            analysis = analyze_layer(self.stack, layer_index, config, kernel)
            progress.increment()
            return analysis

        futures = [executor.submit(task, layer_index) for layer_index in layer_indices]
        try:
            analyses = [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        logger.info(f"Per-layer analysis of {len(layer_indices)} layer(s) completed in {time.time() - start_time:.3f}s")
        return analyses

    def _detect_resin_traps(self, analyses: List[LayerAnalysis], config: IssuesDetectionConfiguration,
                            progress: OperationProgress, executor: Executor) -> Optional[List[AggregateIssue]]:
        propagator = AirMapPropagator(self.stack, analyses, config.resin_trap, executor, progress)
        first_pass = propagator.run_bottom_up()
        if first_pass is None:
            return None
        second_pass = propagator.run_top_down(first_pass, TrapGrouper())
        if second_pass is None:
            return None
        region = propagator.region
        second_pass = second_pass.translated(region.x, region.y)
        if progress.checkpoint():
            return None

        progress.reset("Classifying resin traps and suction cups", 2)
        trap_future = executor.submit(classify_resin_traps, second_pass.resin_traps, self.stack)
        cup_future = None
        if config.resin_trap.detect_suction_cups:
            cup_future = executor.submit(classify_suction_cups, second_pass.suction_cups, self.stack, config.resin_trap)
        issues = trap_future.result()
        progress.increment()
        if cup_future is not None:
            issues.extend(cup_future.result())
        progress.increment()
        return issues

    def _finalize(self, issues: Iterable[AggregateIssue]) -> List[AggregateIssue]:
        return sort_issues(issue for issue in issues if issue not in self.ignored_issues)

    def update_islands_overhangs(self, layer_indices: Iterable[int],
                                 configuration: Optional[IssuesDetectionConfiguration] = None,
                                 progress: Optional[OperationProgress] = None,
                                 max_workers: Optional[int] = None) -> List[AggregateIssue]:
        """
        Re-runs island and overhang detection on some layers only (e.g. after editing them) and
        replaces those layers' island and overhang issues in the current result set.
        """
        base = configuration or self.configuration
        layer_indices = sorted({i for i in layer_indices if 0 <= i < self.stack.count})
        if not layer_indices or self.stack.is_partially_decoded:
            return list(self.issues)

        config = base.model_copy(deep=True).disable_all()
        config.island.enabled = base.island.enabled
        config.overhang.enabled = base.overhang.enabled
        config.island.white_list_layers = layer_indices
        config.overhang.white_list_layers = layer_indices
        progress = progress or OperationProgress()

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            analyses = self._analyze_layers(layer_indices, config, progress, executor)

        refreshed = set(layer_indices)
        kept = [issue for issue in self.issues
                if not (issue.issue_type in (IssueType.ISLAND, IssueType.OVERHANG)
                        and issue.start_layer_index in refreshed)]
        for analysis in analyses:
            if analysis is not None:
                kept.extend(analysis.issues)
        self.issues = self._finalize(kept)
        logger.info(f"Islands and overhangs refreshed on {len(layer_indices)} layer(s).")
        return list(self.issues)

    # --- Result Set ---

    def ignore(self, issues: Iterable[AggregateIssue]) -> None:
        """Hides issues from this and future runs."""
        for issue in issues:
            if issue not in self.ignored_issues:
                self.ignored_issues.append(issue)
        self.issues = [issue for issue in self.issues if issue not in self.ignored_issues]

    def clear_ignored(self) -> None:
        self.ignored_issues = []

    def get_visible(self) -> List[AggregateIssue]:
        return [issue for issue in self.issues if issue not in self.ignored_issues]

    def get_issues(self) -> List[LayerIssue]:
        """Every per-layer issue of the visible result set."""
        return [layer_issue for issue in self.get_visible() for layer_issue in issue.issues]

    def get_issues_by(self, issue_type: Optional[IssueType] = None,
                      layer_index: Optional[int] = None) -> List[LayerIssue]:
        return [
            layer_issue for layer_issue in self.get_issues()
            if (issue_type is None or layer_issue.issue_type == issue_type)
            and (layer_index is None or layer_issue.layer_index == layer_index)
        ]

    def build_report(self) -> DetectionReport:
        visible = self.get_visible()
        return DetectionReport(
            status=determine_status(visible),
            issues=visible,
            layer_count=self.stack.count,
            ignored_count=len(self.ignored_issues),
            cancelled=self.last_run_cancelled,
            analysis_time_sec=self.last_run_time_sec,
        )

    # --- Repair ---

    def drill_suction_cups(self, issues: Iterable[AggregateIssue], vent_hole_diameter: int,
                           progress: Optional[OperationProgress] = None) -> List[AggregateIssue]:
        """
        Drills a vent under each suction cup where a hole of `vent_hole_diameter` pixels fits.

        Returns:
            The issues that were drilled; they are removed from the current result set.
        """
        if vent_hole_diameter <= 0:
            raise ValueError(f"Vent hole diameter must be positive, got {vent_hole_diameter}")
        radius = max(1, vent_hole_diameter // 2)
        operations: List[PixelDrainHole] = []
        drilled: List[AggregateIssue] = []
        for issue in issues:
            if issue.issue_type != IssueType.SUCTION_CUP:
                logger.warning(f"Only suction cups can be drilled, skipping {issue.issue_type.value} on layers {issue.layers}.")
                continue
            location = get_drill_location(issue.first_issue, radius)
            if location is None:
                logger.info(f"No room for a {vent_hole_diameter}px vent in the suction cup on layers {issue.layers}.")
                continue
            operations.append(PixelDrainHole(layer_index=issue.start_layer_index, location=location,
                                             diameter=vent_hole_diameter))
            drilled.append(issue)

        if operations:
            self.stack.draw_modifications(operations, progress)
            self.issues = [issue for issue in self.issues if issue not in drilled]
        return drilled
