# processes/air_map.py

import time
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence

from slice_dfm.core.configuration import ResinTrapDetectionConfiguration
from slice_dfm.core.geometry import ContourGroup
from slice_dfm.core.layers import LayerStack
from slice_dfm.core.progress import OperationProgress
from slice_dfm.core.raster import BLACK, WHITE, Raster
from slice_dfm.processes.layer_rules import LayerAnalysis
from slice_dfm.processes.trap_grouping import TrapGrouper

logger = logging.getLogger(__name__)

PLATE_LAYER_INDEX = 0


class _Overlap(NamedTuple):
    contour: ContourGroup
    mask: Raster
    pixels: int


@dataclass
class FirstPassResult:
    """Bottom-up classification of every hollow, per layer."""
    resin_traps: List[List[ContourGroup]]   # No air below: provisional traps
    air_contours: List[List[ContourGroup]]  # Drained from below


@dataclass
class SecondPassResult:
    """Final split of the provisional traps, per layer."""
    resin_traps: List[List[ContourGroup]]
    suction_cups: List[List[ContourGroup]]

    def translated(self, dx: int, dy: int) -> "SecondPassResult":
        return SecondPassResult(
            resin_traps=[[contour.offset(dx, dy) for contour in layer] for layer in self.resin_traps],
            suction_cups=[[contour.offset(dx, dy) for contour in layer] for layer in self.suction_cups],
        )


class AirMapPropagator:
    """
    Tracks which pixels of the model's bounding rectangle are reachable by air (liquid resin
    able to drain) while walking the layers, first from the plate up and then from the top down.

    Rasters are cropped to the model bounding rectangle, so contours in and out of this class
    are in that rectangle's coordinates.

    Args:
        stack: Layer stack being analyzed.
        analyses: Per-layer analysis of every layer (external contours and hollows).
        config: Resin trap thresholds.
        executor: Runs the per-contour overlap measurements of a layer concurrently.
        progress: Progress/cancellation handle, checked once per layer.
    """

    def __init__(self, stack: LayerStack, analyses: Sequence[LayerAnalysis], config: ResinTrapDetectionConfiguration,
                 executor: Optional[Executor] = None, progress: Optional[OperationProgress] = None):
        self.stack = stack
        self.analyses = analyses
        self.config = config
        self.executor = executor
        self.progress = progress or OperationProgress()
        self.region = stack.bounding_rectangle

    # --- Raster helpers ---

    def solid(self, layer_index: int) -> Raster:
        """Pixels of the layer that block resin."""
        region = self.stack.get_layer_image(layer_index, self.region).roi
        return region.threshold(self.config.maximum_pixel_brightness_to_drain)

    def layer_air(self, layer_index: int, solid: Raster) -> Raster:
        """Empty pixels outside the layer's outer contours: open air on this layer alone."""
        air = solid.bitwise_not()
        externals = self.analyses[layer_index].external_contours
        return air.draw_contours([contour.points for contour in externals], BLACK)

    def _measure(self, running: Raster, contours: Sequence[ContourGroup]) -> List[_Overlap]:
        """Air pixels under each contour. Only reads `running`."""
        def measure(contour: ContourGroup) -> _Overlap:
            mask = contour.rasterize()
            pixels = running.roi(contour.bounding_rectangle).bitwise_and(mask).count_nonzero()
            return _Overlap(contour, mask, pixels)

        if self.executor is not None and len(contours) > 1:
            return list(self.executor.map(measure, contours))
        return [measure(contour) for contour in contours]

    @staticmethod
    def _flood(running: Raster, overlap: _Overlap) -> None:
        window = running.roi(overlap.contour.bounding_rectangle)
        window.bitwise_or(overlap.mask, out=window)

    @staticmethod
    def _seal(running: Raster, overlap: _Overlap) -> None:
        window = running.roi(overlap.contour.bounding_rectangle)
        window.subtract(overlap.mask, out=window)

    @staticmethod
    def _advance(running: Raster, solid: Raster, layer_air: Raster) -> None:
        running.subtract(solid, out=running)
        running.bitwise_or(layer_air, out=running)

    # --- Passes ---

    def run_bottom_up(self) -> Optional[FirstPassResult]:
        """
        Pass 1: hollows touching air carried up from below drain, hollows with no air at all
        are provisional traps. Returns None if cancelled.
        """
        start_time = time.time()
        count = self.stack.count
        start = self.config.start_layer_index
        drain = self.config.required_black_pixels_to_drain
        result = FirstPassResult([[] for _ in range(count)], [[] for _ in range(count)])
        self.progress.reset("Detection pass 1 of 2 (Resin traps)", count, min(start, count))

        running: Optional[Raster] = None
        for layer_index in range(start, count):
            if self.progress.checkpoint():
                return None
            solid = self.solid(layer_index)
            layer_air = self.layer_air(layer_index, solid)
            if running is None:
                running = layer_air.copy()
            else:
                self._advance(running, solid, layer_air)

            if layer_index != PLATE_LAYER_INDEX:
                candidates = [hollow for hollow in self.analyses[layer_index].hollows
                              if hollow.area >= self.config.required_area_to_process_check]
                measured = self._measure(running, candidates)
                for overlap in measured:
                    if overlap.pixels == 0:
                        result.resin_traps[layer_index].append(overlap.contour)
                    elif overlap.pixels >= drain:
                        result.air_contours[layer_index].append(overlap.contour)
                        self._flood(running, overlap)
                    else:
                        self._seal(running, overlap)
            self.progress.increment()

        traps = sum(len(layer) for layer in result.resin_traps)
        logger.info(f"Resin trap pass 1 completed in {time.time() - start_time:.3f}s: {traps} provisional trap contour(s)")
        return result

    def run_top_down(self, first_pass: FirstPassResult, grouper: Optional[TrapGrouper] = None) -> Optional[SecondPassResult]:
        """
        Pass 2: the top of the model is open, so provisional traps reached by air from above are
        suction cups, together with every trap group they touch. Returns None if cancelled.
        """
        start_time = time.time()
        grouper = grouper if grouper is not None else TrapGrouper()
        count = self.stack.count
        start = self.config.start_layer_index
        drain = self.config.required_black_pixels_to_drain
        resin_traps = [list(layer) for layer in first_pass.resin_traps]
        suction_cups: List[List[ContourGroup]] = [[] for _ in range(count)]
        self.progress.reset("Detection pass 2 of 2 (Suction cups)", max(0, count - start))

        running: Optional[Raster] = None
        for layer_index in range(count - 1, start - 1, -1):
            if self.progress.checkpoint():
                return None
            solid = self.solid(layer_index)
            if running is None:
                running = solid.bitwise_not()
            layer_air = self.layer_air(layer_index, solid)
            for contour in first_pass.air_contours[layer_index]:
                contour.draw(layer_air, WHITE)
            self._advance(running, solid, layer_air)

            if resin_traps[layer_index]:
                for overlap in self._measure(running, resin_traps[layer_index]):
                    if overlap.pixels >= drain:
                        self._flood(running, overlap)
                        suction_cups[layer_index].append(overlap.contour)
                        for group in grouper.convert(overlap.contour, layer_index):
                            for member in group:
                                suction_cups[member.layer_index].append(member.contour)
                                if member.layer_index != layer_index:
                                    _remove_identity(resin_traps[member.layer_index], member.contour)
                    else:
                        self._seal(running, overlap)
                        grouper.add(overlap.contour, layer_index)

                cup_ids = {id(contour) for contour in suction_cups[layer_index]}
                resin_traps[layer_index] = [c for c in resin_traps[layer_index] if id(c) not in cup_ids]
            self.progress.increment()

        logger.info(f"Resin trap pass 2 completed in {time.time() - start_time:.3f}s: "
                    f"{sum(len(layer) for layer in suction_cups)} suction cup contour(s)")
        return SecondPassResult(resin_traps, suction_cups)


def _remove_identity(contours: List[ContourGroup], contour: ContourGroup) -> None:
    for i, candidate in enumerate(contours):
        if candidate is contour:
            del contours[i]
            return
