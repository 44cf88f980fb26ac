# core/configuration.py
import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# --- Detector Configurations ---

class DetectorConfiguration(BaseModel):
    enabled: bool = Field(True, description="Run this detector.")


class IslandDetectionConfiguration(DetectorConfiguration):
    white_list_layers: Optional[List[int]] = Field(None, description="If set, only these layer indices are checked.")
    enhanced_detection: bool = Field(True, description="Confirm weakly supported islands against the overhang image.")
    allow_diagonal_bonds: bool = Field(False, description="Use 8-connectivity instead of 4-connectivity.")
    binary_threshold: int = Field(1, ge=0, le=255, description="Pixels above this become solid, 0 uses raw pixels.")
    required_area_to_process_check: int = Field(1, ge=0, description="Skip components smaller than this (px).")
    required_pixel_brightness_to_process_check: int = Field(10, ge=0, le=255)
    required_pixels_to_support: int = Field(10, ge=0, description="Supporting pixels that trigger enhanced confirmation.")
    required_pixels_to_support_multiplier: float = Field(0.25, ge=0, le=1,
        description="Fraction of a component's pixels that must rest on the previous layer.")
    required_pixel_brightness_to_support: int = Field(150, ge=0, le=255)


class OverhangDetectionConfiguration(DetectorConfiguration):
    white_list_layers: Optional[List[int]] = Field(None, description="If set, only these layer indices are checked.")
    independent_from_islands: bool = Field(True, description="Report overhangs even where islands are found.")
    required_pixels_to_consider: int = Field(1, ge=1, description="Minimum surviving pixels of an overhang region.")
    erode_iterations: int = Field(40, ge=0, description="Erosion iterations applied to newly exposed pixels.")


class ResinTrapDetectionConfiguration(DetectorConfiguration):
    start_layer_index: int = Field(0, ge=0)
    binary_threshold: int = Field(100, ge=0, le=255, description="Threshold used to find hollow contours.")
    required_area_to_process_check: int = Field(4, ge=0, description="Hollows smaller than this are skipped (px).")
    required_black_pixels_to_drain: int = Field(10, ge=1, description="Air overlap needed to drain a hollow (px).")
    maximum_pixel_brightness_to_drain: int = Field(30, ge=0, le=255,
        description="Pixels at or below this brightness let resin through.")
    detect_suction_cups: bool = Field(True)
    required_area_to_consider_suction_cup: int = Field(100, ge=0, description="Minimum contour area (px).")
    required_height_to_consider_suction_cup: float = Field(0.5, ge=0, description="Minimum cup height (mm).")


class TouchingBoundDetectionConfiguration(DetectorConfiguration):
    minimum_pixel_brightness: int = Field(127, ge=0, le=255)
    margin_top: int = Field(5, ge=0)
    margin_bottom: int = Field(5, ge=0)
    margin_left: int = Field(5, ge=0)
    margin_right: int = Field(5, ge=0)


class PrintHeightDetectionConfiguration(DetectorConfiguration):
    offset: float = Field(0.0, description="Added to the machine Z to get the allowed print height (mm).")


class EmptyLayerDetectionConfiguration(DetectorConfiguration):
    ignore_starting_layers: bool = Field(True)
    ignore_loose_layers: bool = Field(False)
    ignore_ending_layers: bool = Field(True)


class IssuesDetectionConfiguration(BaseModel):
    """Settings for every detector of a detection run."""
    island: IslandDetectionConfiguration = Field(default_factory=IslandDetectionConfiguration)
    overhang: OverhangDetectionConfiguration = Field(default_factory=OverhangDetectionConfiguration)
    resin_trap: ResinTrapDetectionConfiguration = Field(default_factory=ResinTrapDetectionConfiguration)
    touching_bound: TouchingBoundDetectionConfiguration = Field(default_factory=TouchingBoundDetectionConfiguration)
    print_height: PrintHeightDetectionConfiguration = Field(default_factory=PrintHeightDetectionConfiguration)
    empty_layer: EmptyLayerDetectionConfiguration = Field(default_factory=EmptyLayerDetectionConfiguration)

    @model_validator(mode="after")
    def _sort_white_lists(self):
        for detector in (self.island, self.overhang):
            if detector.white_list_layers is not None:
                detector.white_list_layers = sorted(set(detector.white_list_layers))
        return self

    @property
    def detectors(self) -> List[DetectorConfiguration]:
        return [self.island, self.overhang, self.resin_trap, self.touching_bound, self.print_height, self.empty_layer]

    @property
    def any_enabled(self) -> bool:
        return any(detector.enabled for detector in self.detectors)

    def enable_all(self) -> "IssuesDetectionConfiguration":
        for detector in self.detectors:
            detector.enabled = True
        return self

    def disable_all(self) -> "IssuesDetectionConfiguration":
        for detector in self.detectors:
            detector.enabled = False
        return self

    def validate_settings(self, layer_count: Optional[int] = None) -> List[str]:
        """
        Checks for settings that are legal but probably not what the user wants.

        Args:
            layer_count: Number of layers of the stack the settings will run on, enables range checks.

        Returns:
            Advisory messages, empty when nothing looks off.
        """
        messages: List[str] = []
        if not self.any_enabled:
            messages.append("No detector is enabled, detection will not report anything.")

        if self.island.enabled:
            if self.island.required_pixels_to_support_multiplier == 0:
                messages.append("Island support multiplier is 0: a single supporting pixel keeps any component attached.")
            if self.island.white_list_layers == []:
                messages.append("Island layer allow-list is empty: no layer will be checked for islands.")
            if self.island.enhanced_detection and not self.overhang.enabled:
                messages.append("Enhanced island detection without overhang detection recomputes overhangs per island.")

        if self.overhang.enabled:
            if self.overhang.erode_iterations == 0:
                messages.append("Overhang erosion is 0: every newly exposed pixel will be reported as an overhang.")
            if self.overhang.white_list_layers == []:
                messages.append("Overhang layer allow-list is empty: no layer will be checked for overhangs.")

        if self.resin_trap.enabled:
            if self.resin_trap.maximum_pixel_brightness_to_drain >= self.resin_trap.binary_threshold > 0:
                messages.append(
                    f"Resin trap drain brightness ({self.resin_trap.maximum_pixel_brightness_to_drain}) is not below "
                    f"the binary threshold ({self.resin_trap.binary_threshold}): hollows may never drain."
                )
        elif self.resin_trap.detect_suction_cups:
            messages.append("Suction cup detection requires resin trap detection, no suction cup will be reported.")

        if self.touching_bound.enabled:
            tb = self.touching_bound
            if tb.margin_top == tb.margin_bottom == tb.margin_left == tb.margin_right == 0:
                messages.append("All touching bound margins are 0: nothing can touch the bounds.")

        if self.empty_layer.enabled:
            el = self.empty_layer
            if el.ignore_starting_layers and el.ignore_loose_layers and el.ignore_ending_layers:
                messages.append("Every empty layer kind is ignored: empty layer detection will not report anything.")

        if layer_count is not None:
            if self.resin_trap.enabled and self.resin_trap.start_layer_index >= layer_count:
                messages.append(
                    f"Resin trap start layer {self.resin_trap.start_layer_index} is beyond the last layer ({layer_count - 1})."
                )
            for name, detector in (("Island", self.island), ("Overhang", self.overhang)):
                if detector.enabled and detector.white_list_layers:
                    out_of_range = [i for i in detector.white_list_layers if i >= layer_count]
                    if out_of_range:
                        messages.append(f"{name} allow-list has layer indices beyond the stack: {out_of_range}.")

        for message in messages:
            logger.debug(f"Configuration advisory: {message}")
        return messages


def load_detection_configuration(path: Union[str, Path]) -> IssuesDetectionConfiguration:
    """
    Loads a detection configuration from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, is not valid JSON or holds invalid values.
    """
    path = Path(path)
    logger.info(f"Loading detection configuration from {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Detection configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Error decoding JSON from {path}: {e}")

    try:
        return IssuesDetectionConfiguration.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid detection configuration in {path}: {e}") from e
