from __future__ import annotations

import json
from pathlib import Path

import pytest

from ptzcalib.cli.main import main


@pytest.mark.integration
def test_synthesize_then_calibrate(tmp_path: Path, capsys) -> None:
    corr_path = tmp_path / "corr.json"
    truth_path = tmp_path / "truth.json"
    out_path = tmp_path / "cam.json"

    rc = main(["synthesize", "--out", str(corr_path), "--camera-out", str(truth_path), "--seed", "1"])
    assert rc == 0
    assert corr_path.exists() and truth_path.exists()

    rc = main(["calibrate", str(corr_path), "--out", str(out_path)])
    assert rc == 0
    cam = json.loads(out_path.read_text(encoding="utf-8"))
    truth = json.loads(truth_path.read_text(encoding="utf-8"))
    assert abs(cam["focal_length_px"] - truth["focal_length_px"]) < 1e-1
    assert max(abs(a - b) for a, b in zip(cam["center"], truth["center"])) < 1e-3
    assert "focal_length_px" in capsys.readouterr().out


@pytest.mark.integration
def test_calibrate_with_initial_camera(tmp_path: Path) -> None:
    corr_path = tmp_path / "corr.json"
    truth_path = tmp_path / "truth.json"
    assert main(["synthesize", "--out", str(corr_path), "--camera-out", str(truth_path), "--noise-px", "0.3"]) == 0
    rc = main(
        ["calibrate", str(corr_path), "--principal-point", "960", "540", "--init", str(truth_path), "--max-nfev", "500"]
    )
    assert rc == 0


def test_calibrate_reports_estimation_failure(tmp_path: Path, capsys) -> None:
    corr_path = tmp_path / "few.json"
    corr_path.write_text(
        json.dumps(
            {
                "schema_version": "ptzcalib.correspondences.v0",
                "points": {"world": [[0.0, 0.0], [1.0, 0.0]], "image": [[10.0, 10.0], [20.0, 10.0]]},
            }
        ),
        encoding="utf-8",
    )
    rc = main(["calibrate", str(corr_path), "--principal-point", "320", "240"])
    assert rc == 1
    err = capsys.readouterr().err
    assert "InsufficientData" in err
    assert "linear_calibration" in err


def test_calibrate_requires_principal_point(tmp_path: Path, capsys) -> None:
    corr_path = tmp_path / "nopp.json"
    corr_path.write_text(
        json.dumps({"schema_version": "ptzcalib.correspondences.v0", "points": {"world": [], "image": []}}),
        encoding="utf-8",
    )
    assert main(["calibrate", str(corr_path)]) == 1
    assert "principal-point" in capsys.readouterr().err


def test_calibrate_rejects_malformed_file(tmp_path: Path) -> None:
    corr_path = tmp_path / "bad.json"
    corr_path.write_text(json.dumps({"schema_version": "nope"}), encoding="utf-8")
    assert main(["calibrate", str(corr_path), "--principal-point", "0", "0"]) == 1
