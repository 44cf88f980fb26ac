# testing/test_cli.py

import json

import numpy as np
import pytest
from typer.testing import CliRunner

from slice_dfm.core.layers import LayerStack
from slice_dfm.main_cli import app

runner = CliRunner()


def test_info(benchmark_dir):
    result = runner.invoke(app, ["info", str(benchmark_dir / "sealed_hole.npz")])
    assert result.exit_code == 0, result.output
    assert "Layers:" in result.output
    assert "8" in result.output


def test_detect_empty_layers_passes(benchmark_dir, tmp_path):
    report_path = tmp_path / "report.json"
    result = runner.invoke(app, ["detect", str(benchmark_dir / "empty_layers.npz"), "-e", "--output", str(report_path)])
    assert result.exit_code == 0, result.output
    report = json.loads(report_path.read_text())
    assert report["status"] == "Pass"
    assert [issue["issue_type"] for issue in report["issues"]] == ["Empty layer"]
    assert report["issues"][0]["details"]["kind"] == "Loose"


def test_detect_resin_trap_fails(benchmark_dir, tmp_path):
    report_path = tmp_path / "report.json"
    result = runner.invoke(app, ["detect", str(benchmark_dir / "sealed_hole.npz"), "-r", "--output", str(report_path)])
    assert result.exit_code == 2, result.output
    report = json.loads(report_path.read_text())
    assert report["status"] == "Fail"
    assert {issue["issue_type"] for issue in report["issues"]} == {"Resin trap"}


def test_detect_flags_filter_reported_types(benchmark_dir, tmp_path):
    report_path = tmp_path / "report.json"
    result = runner.invoke(app, ["detect", str(benchmark_dir / "suction_cup.npz"), "-s", "--output", str(report_path)])
    assert result.exit_code == 0, result.output
    report = json.loads(report_path.read_text())
    assert [issue["issue_type"] for issue in report["issues"]] == ["Suction cup"]
    assert report["status"] == "Warning"


def test_detect_with_config_file(benchmark_dir, tmp_path):
    config_path = tmp_path / "detection.json"
    config_path.write_text(json.dumps({"empty_layer": {"ignore_loose_layers": True}}))
    result = runner.invoke(app, ["detect", str(benchmark_dir / "empty_layers.npz"), "-e", "-c", str(config_path)])
    assert result.exit_code == 0, result.output
    assert "No issues found." in result.output


def test_detect_missing_input():
    result = runner.invoke(app, ["detect", "does-not-exist.npz"])
    assert result.exit_code != 0


def test_detect_unreadable_input(tmp_path):
    path = tmp_path / "volume.txt"
    path.write_text("nothing")
    result = runner.invoke(app, ["detect", str(path)])
    assert result.exit_code == 1


def test_drill_writes_layers(benchmark_dir, tmp_path):
    output_dir = tmp_path / "drilled"
    result = runner.invoke(app, ["drill", str(benchmark_dir / "suction_cup.npz"), "--output-dir", str(output_dir),
                                 "--vent-diameter", "8"])
    assert result.exit_code == 0, result.output
    assert "drilled: 1" in result.output
    drilled = LayerStack.from_directory(output_dir)
    original = LayerStack.from_file(benchmark_dir / "suction_cup.npz")
    assert drilled.count == original.count
    assert np.count_nonzero(drilled[0].raster.data) < np.count_nonzero(original[0].raster.data)


@pytest.mark.parametrize("data, expected", [
    ({}, "Detection settings look fine."),
    ({"overhang": {"erode_iterations": 0}}, "Overhang erosion is 0"),
])
def test_validate_config(tmp_path, data, expected):
    config_path = tmp_path / "detection.json"
    config_path.write_text(json.dumps(data))
    result = runner.invoke(app, ["validate-config", str(config_path)])
    assert result.exit_code == 0, result.output
    assert expected in " ".join(result.output.split())
