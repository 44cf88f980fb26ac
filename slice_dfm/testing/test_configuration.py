# testing/test_configuration.py

import json
import threading
import time

import pytest
from pydantic import ValidationError

from slice_dfm.config import Settings
from slice_dfm.core.configuration import IssuesDetectionConfiguration, load_detection_configuration
from slice_dfm.core.exceptions import ConfigurationError
from slice_dfm.core.progress import OperationProgress
from slice_dfm.core.utils import format_layer_range, format_time, round_height

# --- Detection Settings ---

def test_defaults():
    config = IssuesDetectionConfiguration()
    assert all(detector.enabled for detector in config.detectors)
    assert config.overhang.erode_iterations == 40
    assert config.resin_trap.required_area_to_consider_suction_cup == 100
    assert config.empty_layer.ignore_starting_layers and config.empty_layer.ignore_ending_layers
    assert not config.empty_layer.ignore_loose_layers
    assert config.validate_settings() == []


def test_white_lists_are_sorted_and_unique():
    config = IssuesDetectionConfiguration.model_validate({"island": {"white_list_layers": [5, 1, 5, 3]}})
    assert config.island.white_list_layers == [1, 3, 5]
    assert config.overhang.white_list_layers is None


def test_enable_and_disable_all():
    config = IssuesDetectionConfiguration().disable_all()
    assert not config.any_enabled
    assert "No detector is enabled" in config.validate_settings()[0]
    assert config.enable_all().any_enabled


@pytest.mark.parametrize("data, fragment", [
    ({"overhang": {"erode_iterations": 0}}, "Overhang erosion is 0"),
    ({"island": {"required_pixels_to_support_multiplier": 0}}, "support multiplier is 0"),
    ({"resin_trap": {"maximum_pixel_brightness_to_drain": 120}}, "hollows may never drain"),
    ({"resin_trap": {"enabled": False}}, "Suction cup detection requires resin trap detection"),
    ({"touching_bound": {"margin_top": 0, "margin_bottom": 0, "margin_left": 0, "margin_right": 0}}, "margins are 0"),
    ({"empty_layer": {"ignore_loose_layers": True}}, "Every empty layer kind is ignored"),
])
def test_validate_settings_advisories(data, fragment):
    messages = IssuesDetectionConfiguration.model_validate(data).validate_settings()
    assert any(fragment in message for message in messages), messages


def test_validate_settings_layer_ranges():
    config = IssuesDetectionConfiguration.model_validate({
        "resin_trap": {"start_layer_index": 10},
        "island": {"white_list_layers": [2, 12]},
    })
    assert config.validate_settings() == []
    messages = config.validate_settings(layer_count=10)
    assert any("beyond the last layer" in message for message in messages)
    assert any("[12]" in message for message in messages)


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        IssuesDetectionConfiguration.model_validate({"overhang": {"required_pixels_to_consider": 0}})
    with pytest.raises(ValidationError):
        IssuesDetectionConfiguration.model_validate({"island": {"binary_threshold": 300}})


def test_load_detection_configuration(tmp_path):
    path = tmp_path / "detection.json"
    path.write_text(json.dumps({"island": {"enabled": False}, "overhang": {"erode_iterations": 12}}))
    config = load_detection_configuration(path)
    assert not config.island.enabled
    assert config.overhang.erode_iterations == 12


@pytest.mark.parametrize("content", [None, "{not json", json.dumps({"overhang": {"erode_iterations": -1}})])
def test_load_detection_configuration_errors(tmp_path, content):
    path = tmp_path / "detection.json"
    if content is not None:
        path.write_text(content)
    with pytest.raises(ConfigurationError):
        load_detection_configuration(path)

# --- Application Settings ---

def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SLICE_DFM_LOG_LEVEL", "debug")
    monkeypatch.setenv("SLICE_DFM_MAX_WORKERS", "3")
    monkeypatch.setenv("SLICE_DFM_MACHINE_Z_MM", "150")
    settings = Settings()
    assert settings.log_level == "DEBUG"
    assert settings.max_workers == 3
    assert settings.machine_z_mm == 150.0


@pytest.mark.parametrize("name, value", [("SLICE_DFM_LOG_LEVEL", "LOUD"), ("SLICE_DFM_MAX_WORKERS", "0")])
def test_settings_validation(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings()

# --- Progress ---

def test_progress_counts_and_text():
    changes = []
    progress = OperationProgress(on_change=changes.append)
    progress.reset("Layers processed", 10)
    progress.increment(3)
    assert progress.processed_items == 3
    assert progress.progress_percent == 30.0
    assert str(progress) == "03/10 Layers processed | 30.00%"
    assert len(changes) == 2


def test_progress_pause_blocks_until_resumed():
    progress = OperationProgress()
    progress.is_paused = True
    released = threading.Event()

    def worker():
        progress.pause_if_requested()
        released.set()

    thread = threading.Thread(target=worker)
    thread.start()
    time.sleep(0.2)
    assert not released.is_set()
    progress.is_paused = False
    thread.join(timeout=2)
    assert released.is_set()


def test_cancel_releases_paused_checkpoint():
    progress = OperationProgress()
    progress.is_paused = True
    progress.cancel()
    assert progress.checkpoint() is True
    assert progress.is_cancellation_requested

# --- Utilities ---

def test_utils():
    assert round_height(0.15000000000000002) == 0.15
    assert format_layer_range(3, 3) == "3"
    assert format_layer_range(3, 9) == "3-9"
    assert format_time(None) == "N/A"
    assert format_time(1.5) == "1.50 seconds"
    assert format_time(125) == "2m 5.0s"
