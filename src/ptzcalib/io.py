from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from ptzcalib.api.pipeline import Correspondences
from ptzcalib.core.camera import CalibrationMatrix, CameraPose, Rotation3D
from ptzcalib.core.conic import Conic
from ptzcalib.errors import CorrespondenceValidationError

CORRESPONDENCES_SCHEMA = "ptzcalib.correspondences.v0"
CAMERA_SCHEMA = "ptzcalib.camera.v0"


@dataclass(frozen=True)
class CorrespondenceFile:
    schema_version: str
    correspondences: Correspondences
    principal_point: tuple[float, float] | None = None


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise CorrespondenceValidationError(msg)


def _xy_list(raw: Any, name: str) -> np.ndarray:
    _require(isinstance(raw, (list, tuple)), f"{name} must be a list of [x,y]")
    for i, p in enumerate(raw):
        _require(isinstance(p, (list, tuple)) and len(p) == 2, f"{name}[{i}] must be [x,y]")
    arr = np.asarray(raw, dtype=np.float64).reshape(-1, 2)
    _require(bool(np.all(np.isfinite(arr))), f"{name} must be finite")
    return arr


def _segment(raw: Any, name: str) -> np.ndarray:
    seg = _xy_list(raw, name)
    _require(seg.shape[0] == 2, f"{name} must hold exactly two endpoints")
    return seg


def load_correspondences(path: Path) -> CorrespondenceFile:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_correspondences(data)


def parse_correspondences(data: dict[str, Any]) -> CorrespondenceFile:
    """
    Parse a `ptzcalib.correspondences.v0` document:

      {
        "schema_version": "ptzcalib.correspondences.v0",
        "principal_point": [px, py],                        (optional)
        "points": {"world": [[x,y],..], "image": [[u,v],..]},
        "lines": [{"world": [[x,y],[x,y]], "image": [[u,v],[u,v]], "samples": [[u,v],..]}, ..],
        "conics": [{"coefficients": [a,b,c,d,e,f], "samples": [[u,v],..]}, ..],
        "unassigned_conic_samples": [[u,v],..]
      }

    World coordinates are on the z = 0 model plane. Each line needs "image"
    (segment endpoints) and/or "samples"; "image" is used by the linear stage only
    when every line has it.
    """
    _require(isinstance(data, dict), "document must be a JSON object")
    schema_version = data.get("schema_version")
    _require(schema_version == CORRESPONDENCES_SCHEMA, f"schema_version must be {CORRESPONDENCES_SCHEMA}")

    pp = None
    if data.get("principal_point") is not None:
        raw_pp = data["principal_point"]
        _require(isinstance(raw_pp, (list, tuple)) and len(raw_pp) == 2, "principal_point must be [px,py]")
        pp = (float(raw_pp[0]), float(raw_pp[1]))

    points = data.get("points", {})
    _require(isinstance(points, dict), "points must be an object")
    wp = _xy_list(points.get("world", []), "points.world")
    ip = _xy_list(points.get("image", []), "points.image")
    _require(wp.shape[0] == ip.shape[0], "points.world and points.image must have the same length")

    lines = data.get("lines", [])
    _require(isinstance(lines, list), "lines must be a list")
    world_lines: list[np.ndarray] = []
    image_lines: list[np.ndarray | None] = []
    line_samples: list[np.ndarray | None] = []
    for i, line in enumerate(lines):
        _require(isinstance(line, dict), f"lines[{i}] must be an object")
        _require("world" in line, f"lines[{i}].world is required")
        world_lines.append(_segment(line["world"], f"lines[{i}].world"))
        seg = _segment(line["image"], f"lines[{i}].image") if line.get("image") is not None else None
        samples = _xy_list(line["samples"], f"lines[{i}].samples") if line.get("samples") is not None else None
        _require(seg is not None or samples is not None, f"lines[{i}] needs image and/or samples")
        image_lines.append(seg)
        line_samples.append(samples)

    il = None
    if world_lines and all(s is not None for s in image_lines):
        il = np.stack([s for s in image_lines if s is not None], axis=0)
    ilp = None
    if any(s is not None for s in line_samples) or (world_lines and il is None):
        ilp = tuple(s if s is not None else seg for s, seg in zip(line_samples, image_lines))

    conics_raw = data.get("conics", [])
    _require(isinstance(conics_raw, list), "conics must be a list")
    conics: list[Conic] = []
    conic_samples: list[np.ndarray] = []
    for i, c in enumerate(conics_raw):
        _require(isinstance(c, dict), f"conics[{i}] must be an object")
        coeffs = c.get("coefficients")
        _require(
            isinstance(coeffs, (list, tuple)) and len(coeffs) == 6,
            f"conics[{i}].coefficients must be [a,b,c,d,e,f]",
        )
        vals = [float(v) for v in coeffs]
        _require(all(np.isfinite(vals)), f"conics[{i}].coefficients must be finite")
        conics.append(Conic(*vals))
        conic_samples.append(_xy_list(c.get("samples", []), f"conics[{i}].samples"))

    unassigned = _xy_list(data.get("unassigned_conic_samples", []), "unassigned_conic_samples")
    _require(unassigned.shape[0] == 0 or bool(conics), "unassigned_conic_samples need at least one conic")

    try:
        corr = Correspondences(
            world_points=wp,
            image_points=ip,
            world_lines=np.stack(world_lines, axis=0) if world_lines else np.zeros((0, 2, 2)),
            image_lines=il,
            image_line_points=ilp,
            world_conics=tuple(conics),
            image_conic_points=tuple(conic_samples) if conics else None,
            unassigned_conic_points=unassigned,
        )
    except ValueError as exc:
        raise CorrespondenceValidationError(str(exc)) from exc
    return CorrespondenceFile(schema_version=schema_version, correspondences=corr, principal_point=pp)


def correspondences_to_dict(
    corr: Correspondences, principal_point: tuple[float, float] | None = None
) -> dict[str, Any]:
    lines: list[dict[str, Any]] = []
    for i, wl in enumerate(corr.world_lines):
        entry: dict[str, Any] = {"world": wl[:, :2].tolist()}
        if corr.image_lines is not None:
            entry["image"] = corr.image_lines[i].tolist()
        if corr.image_line_points is not None:
            entry["samples"] = corr.image_line_points[i].tolist()
        lines.append(entry)

    groups = corr.conic_point_groups()
    out: dict[str, Any] = {
        "schema_version": CORRESPONDENCES_SCHEMA,
        "points": {
            "world": corr.world_points[:, :2].tolist(),
            "image": corr.image_points.tolist(),
        },
        "lines": lines,
        "conics": [
            {"coefficients": c.coefficients().tolist(), "samples": g.tolist()}
            for c, g in zip(corr.world_conics, groups)
        ],
        "unassigned_conic_samples": corr.unassigned_conic_points.tolist(),
    }
    if principal_point is not None:
        out["principal_point"] = [float(principal_point[0]), float(principal_point[1])]
    return out


def save_correspondences(path: Path, corr: Correspondences, principal_point: tuple[float, float] | None = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(correspondences_to_dict(corr, principal_point), indent=2), encoding="utf-8")
    return path


def camera_to_dict(pose: CameraPose, diagnostics: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    `R` and `t` are written for convenience; only focal length, principal point,
    rotation vector and centre are read back.
    """
    out: dict[str, Any] = {
        "schema_version": CAMERA_SCHEMA,
        "focal_length_px": float(pose.focal_length),
        "principal_point_px": [float(v) for v in pose.principal_point],
        "rotvec": pose.rotation.rotvec.tolist(),
        "center": pose.center.tolist(),
        "R": pose.R().tolist(),
        "t": pose.t().tolist(),
    }
    if diagnostics:
        out["diagnostics"] = {k: v for k, v in diagnostics.items() if _is_json_scalar_tree(v)}
    return out


def _is_json_scalar_tree(v: Any) -> bool:
    if v is None or isinstance(v, (bool, int, float, str)):
        return True
    if isinstance(v, (list, tuple)):
        return all(_is_json_scalar_tree(x) for x in v)
    if isinstance(v, dict):
        return all(isinstance(k, str) and _is_json_scalar_tree(x) for k, x in v.items())
    return False


def camera_from_dict(data: dict[str, Any]) -> CameraPose:
    _require(isinstance(data, dict), "camera must be a JSON object")
    _require(data.get("schema_version") == CAMERA_SCHEMA, f"schema_version must be {CAMERA_SCHEMA}")

    f_raw = data.get("focal_length_px")
    _require(f_raw is not None, "focal_length_px is required")
    f = float(f_raw)
    _require(bool(np.isfinite(f)) and f > 0.0, "focal_length_px must be > 0")

    pp = data.get("principal_point_px")
    _require(isinstance(pp, (list, tuple)) and len(pp) == 2, "principal_point_px must be [px,py]")
    rotvec = data.get("rotvec")
    _require(isinstance(rotvec, (list, tuple)) and len(rotvec) == 3, "rotvec must be [rx,ry,rz]")
    center = data.get("center")
    _require(isinstance(center, (list, tuple)) and len(center) == 3, "center must be [x,y,z]")

    rv = np.asarray(rotvec, dtype=np.float64)
    c = np.asarray(center, dtype=np.float64)
    _require(bool(np.all(np.isfinite(rv)) and np.all(np.isfinite(c))), "rotvec and center must be finite")
    return CameraPose(
        calibration=CalibrationMatrix(focal_length=f, principal_point=(float(pp[0]), float(pp[1]))),
        rotation=Rotation3D(rotvec=rv),
        center=c,
    )


def save_camera(path: Path, pose: CameraPose, diagnostics: dict[str, Any] | None = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(camera_to_dict(pose, diagnostics), indent=2, sort_keys=True), encoding="utf-8")
    return path


def load_camera(path: Path) -> CameraPose:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return camera_from_dict(data)
