# processes/classifier.py

import time
import logging
from typing import List, Sequence

from slice_dfm.core.common_types import AggregateIssue, IssueType, LayerIssue
from slice_dfm.core.configuration import ResinTrapDetectionConfiguration
from slice_dfm.core.geometry import ContourGroup
from slice_dfm.core.layers import LayerStack
from slice_dfm.processes.trap_grouping import TrapGrouper, TrapMember

logger = logging.getLogger(__name__)


def _group_top_down(contours_per_layer: Sequence[Sequence[ContourGroup]], min_area: float = 0) -> List[List[TrapMember]]:
    grouper = TrapGrouper()
    for layer_index in range(len(contours_per_layer) - 1, -1, -1):
        for contour in contours_per_layer[layer_index]:
            if contour.area < min_area:
                continue
            grouper.add(contour, layer_index)
    return grouper.groups()


def _to_aggregate(issue_type: IssueType, group: List[TrapMember], stack: LayerStack) -> AggregateIssue:
    layer_issues = [
        LayerIssue.from_contours(issue_type, stack[member.layer_index], member.contour.to_point_lists(),
                                 member.contour.bounding_rectangle, member.contour.area, member.contour.pixel_count())
        for member in group
    ]
    return AggregateIssue.from_issues(issue_type, layer_issues, stack.pixels_per_millimeter)


def classify_resin_traps(resin_traps: Sequence[Sequence[ContourGroup]], stack: LayerStack) -> List[AggregateIssue]:
    """Groups confirmed trap contours into volumes. Volumes resting on the plate are not traps."""
    start_time = time.time()
    plate_z = stack.first_layer.position_z
    issues = []
    for group in _group_top_down(resin_traps):
        if any(stack[member.layer_index].position_z <= plate_z for member in group):
            logger.debug(f"Dropping trap group touching the plate ({len(group)} contour(s))")
            continue
        issues.append(_to_aggregate(IssueType.RESIN_TRAP, group, stack))
    logger.info(f"Resin trap classification completed in {time.time() - start_time:.3f}s: {len(issues)} trap(s)")
    return issues


def classify_suction_cups(suction_cups: Sequence[Sequence[ContourGroup]], stack: LayerStack,
                          config: ResinTrapDetectionConfiguration) -> List[AggregateIssue]:
    """Groups suction cup contours, keeping only cups wide and tall enough to matter."""
    start_time = time.time()
    issues = []
    for group in _group_top_down(suction_cups, min_area=config.required_area_to_consider_suction_cup):
        issue = _to_aggregate(IssueType.SUCTION_CUP, group, stack)
        if issue.total_height < config.required_height_to_consider_suction_cup:
            continue
        issues.append(issue)
    logger.info(f"Suction cup classification completed in {time.time() - start_time:.3f}s: {len(issues)} cup(s)")
    return issues
