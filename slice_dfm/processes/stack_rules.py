# processes/stack_rules.py

import time
import logging
from typing import List, Optional

from slice_dfm.core.common_types import AggregateIssue, EmptyLayerKind, IssueType, LayerIssue
from slice_dfm.core.configuration import EmptyLayerDetectionConfiguration, PrintHeightDetectionConfiguration
from slice_dfm.core.layers import LayerStack
from slice_dfm.core.utils import round_height

logger = logging.getLogger(__name__)


def check_print_height(stack: LayerStack, config: PrintHeightDetectionConfiguration) -> List[AggregateIssue]:
    """One issue holding every layer above the machine's printable height."""
    if not config.enabled or stack.machine_z <= 0:
        return []
    limit = round_height(stack.machine_z + config.offset)
    if stack.print_height <= limit:
        return []

    layer_issues = [LayerIssue.from_layer(IssueType.PRINT_HEIGHT, layer)
                    for layer in stack if layer.position_z > limit]
    if not layer_issues:
        return []
    logger.info(f"Print height {stack.print_height}mm exceeds {limit}mm on {len(layer_issues)} layer(s).")
    issue = AggregateIssue.from_issues(IssueType.PRINT_HEIGHT, layer_issues, stack.pixels_per_millimeter,
                                       details={"limit_mm": limit, "print_height_mm": stack.print_height})
    return [issue]


def classify_empty_layers(stack: LayerStack) -> List[Optional[EmptyLayerKind]]:
    """
    Kind of every layer in the stack, None for layers that are not empty.

    Starting: this and every layer before it is empty. Ending: this and every layer after it is empty.
    Anything else is loose.
    """
    empty = [layer.is_empty for layer in stack]
    kinds = [None] * len(empty)

    leading = 0
    while leading < len(empty) and empty[leading]:
        leading += 1
    trailing_start = len(empty)
    while trailing_start > 0 and empty[trailing_start - 1]:
        trailing_start -= 1

    for index, is_empty in enumerate(empty):
        if not is_empty:
            continue
        if index < leading:
            kinds[index] = EmptyLayerKind.STARTING
        elif index >= trailing_start:
            kinds[index] = EmptyLayerKind.ENDING
        else:
            kinds[index] = EmptyLayerKind.LOOSE
    return kinds


def check_empty_layers(stack: LayerStack, config: EmptyLayerDetectionConfiguration) -> List[AggregateIssue]:
    """One issue per empty layer whose kind is not ignored."""
    if not config.enabled:
        return []
    start_time = time.time()
    ignored = {
        EmptyLayerKind.STARTING: config.ignore_starting_layers,
        EmptyLayerKind.LOOSE: config.ignore_loose_layers,
        EmptyLayerKind.ENDING: config.ignore_ending_layers,
    }
    issues = []
    for layer, kind in zip(stack, classify_empty_layers(stack)):
        if kind is None or ignored[kind]:
            continue
        issues.append(AggregateIssue.from_issues(
            IssueType.EMPTY_LAYER, [LayerIssue.from_layer(IssueType.EMPTY_LAYER, layer)],
            details={"kind": kind.value},
        ))
    logger.debug(f"Empty layer check completed in {time.time() - start_time:.3f}s, {len(issues)} reported.")
    return issues
