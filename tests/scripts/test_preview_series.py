"""Tests for scripts/preview_series.py."""

import importlib.util
import sys
from datetime import date
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "preview_series.py"

REQUEST_YAML = """\
client_id: client-42
service_type: dog_walk
number_of_visits: 6
frequency: weekly
start_date: 2024-01-01
preferred_time: "09:00"
preferred_days: [1, 3]
base_price: "25.00"
time_zone: America/New_York
"""


@pytest.fixture(scope="module")
def preview_script():
    spec = importlib.util.spec_from_file_location("preview_series", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def request_file(tmp_path):
    path = tmp_path / "request.yaml"
    path.write_text(REQUEST_YAML)
    return path


def test_prints_batches(preview_script, request_file, capsys, monkeypatch):
    monkeypatch.delenv("SERIES_CONFIG_PATH", raising=False)
    assert preview_script.preview(request_file, None, date(2024, 1, 2)) == 0

    out = capsys.readouterr().out
    assert "Batch 0  window starts 2024-01-01" in out
    assert "Batch 2  window starts 2024-01-15" in out
    assert "invoice due 2024-01-05" in out
    assert "6 visits in 3 batches" in out


def test_invalid_request_exits_2(preview_script, tmp_path, capsys, monkeypatch):
    path = tmp_path / "bad.yaml"
    path.write_text(REQUEST_YAML.replace("preferred_days: [1, 3]", "preferred_days: []"))
    monkeypatch.setattr(sys, "argv", ["preview_series.py", str(path)])

    assert preview_script.main() == 2
    assert "VALIDATION_ERROR" in capsys.readouterr().err


def test_missing_file_exits_1(preview_script, tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["preview_series.py", str(tmp_path / "nope.yaml")])
    assert preview_script.main() == 1
