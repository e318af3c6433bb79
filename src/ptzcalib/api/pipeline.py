from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ptzcalib.calib.assign import assign_points_to_conics
from ptzcalib.calib.linear import estimate_initial
from ptzcalib.calib.refine import SolverOptions, refine_model
from ptzcalib.calib.residuals import build_residual_model
from ptzcalib.core.camera import CameraPose
from ptzcalib.core.conic import Conic
from ptzcalib.core.geometry import (
    as_image_points,
    as_image_segments,
    as_point_groups,
    as_world_points,
    as_world_segments,
    require_same_length,
)
from ptzcalib.errors import CameraEstimationError

logger = logging.getLogger(__name__)


class Stage(enum.Enum):
    INIT = "init"
    LINEAR_CALIBRATION = "linear_calibration"
    CONIC_ASSIGNMENT = "conic_assignment"
    NONLINEAR_REFINEMENT = "nonlinear_refinement"
    RESULT = "result"
    FAILED = "failed"


@dataclass(frozen=True)
class Correspondences:
    """
    World-plane model features paired with their image observations for one frame.

    - points: `world_points` (N,3) on z = 0 <-> `image_points` (N,2)
    - lines: `world_lines` (M,2,3) segments; `image_lines` (M,2,2) annotated image
      segments (used by the linear initialization) and/or `image_line_points`,
      M groups of samples on each image line (used by refinement)
    - conics: `world_conics` with `image_conic_points` (one group per conic) and/or
      `unassigned_conic_points` (N,2) that still have to be grouped
    """

    world_points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float64))
    image_points: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.float64))
    world_lines: np.ndarray = field(default_factory=lambda: np.zeros((0, 2, 3), dtype=np.float64))
    image_lines: np.ndarray | None = None
    image_line_points: tuple[np.ndarray, ...] | None = None
    world_conics: tuple[Conic, ...] = ()
    image_conic_points: tuple[np.ndarray, ...] | None = None
    unassigned_conic_points: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.float64))

    def __post_init__(self) -> None:
        wp = as_world_points(self.world_points)
        ip = as_image_points(self.image_points)
        require_same_length(wp, ip, "world_points and image_points")
        wl = as_world_segments(self.world_lines)
        il = None if self.image_lines is None else as_image_segments(self.image_lines)
        if il is not None:
            require_same_length(wl, il, "world_lines and image_lines")
        ilp = None
        if self.image_line_points is not None:
            ilp = tuple(as_point_groups(self.image_line_points, name="image_line_points"))
            require_same_length(wl, ilp, "world_lines and image_line_points")
        conics = tuple(self.world_conics)
        icp = None
        if self.image_conic_points is not None:
            icp = tuple(as_point_groups(self.image_conic_points, name="image_conic_points"))
            require_same_length(conics, icp, "world_conics and image_conic_points")
        ucp = as_image_points(self.unassigned_conic_points, name="unassigned_conic_points")
        if ucp.shape[0] and not conics:
            raise ValueError("unassigned_conic_points given without world_conics")

        object.__setattr__(self, "world_points", wp)
        object.__setattr__(self, "image_points", ip)
        object.__setattr__(self, "world_lines", wl)
        object.__setattr__(self, "image_lines", il)
        object.__setattr__(self, "image_line_points", ilp)
        object.__setattr__(self, "world_conics", conics)
        object.__setattr__(self, "image_conic_points", icp)
        object.__setattr__(self, "unassigned_conic_points", ucp)

    def line_point_groups(self) -> list[np.ndarray]:
        """Samples per image line; falls back to the annotated segment endpoints."""
        if self.image_line_points is not None:
            return list(self.image_line_points)
        if self.image_lines is not None:
            return [seg.copy() for seg in self.image_lines]
        if self.world_lines.shape[0]:
            raise ValueError("world_lines need image_lines or image_line_points")
        return []

    def conic_point_groups(self) -> list[np.ndarray]:
        if self.image_conic_points is not None:
            return list(self.image_conic_points)
        return [np.zeros((0, 2), dtype=np.float64) for _ in self.world_conics]


@dataclass(frozen=True)
class CalibrationResult:
    pose: CameraPose
    initial_pose: CameraPose
    stage: Stage
    diagnostics: dict[str, Any]
    conic_groups: tuple[np.ndarray, ...] = ()


def _fail(exc: CameraEstimationError, stage: Stage, diag: dict[str, Any]) -> CameraEstimationError:
    exc.stage = stage
    diag["stages"].append(Stage.FAILED.value)
    exc.stages = tuple(diag["stages"])
    logger.debug("calibration stage: %s", Stage.FAILED.value)
    logger.warning("camera estimation failed during %s: %s", stage.value, exc)
    return exc


def calibrate_camera(
    corr: Correspondences,
    principal_point: tuple[float, float],
    *,
    initial_pose: CameraPose | None = None,
    options: SolverOptions | None = None,
) -> CalibrationResult:
    """
    Run the full estimation for one frame:

      INIT -> LINEAR_CALIBRATION -> [CONIC_ASSIGNMENT] -> NONLINEAR_REFINEMENT -> RESULT

    `initial_pose` (e.g. from an external regressor) replaces the linear stage.
    Its principal point is overridden by `principal_point`. Failures propagate as
    CameraEstimationError subclasses with `.stage` set to the failing stage.
    """
    opts = options or SolverOptions()
    pp = (float(principal_point[0]), float(principal_point[1]))
    stage = Stage.INIT
    diag: dict[str, Any] = {"stages": [stage.value]}

    def enter(next_stage: Stage) -> Stage:
        diag["stages"].append(next_stage.value)
        logger.debug("calibration stage: %s", next_stage.value)
        return next_stage

    if initial_pose is None:
        stage = enter(Stage.LINEAR_CALIBRATION)
        try:
            pose0 = estimate_initial(
                corr.world_points,
                corr.image_points,
                pp,
                corr.world_lines if corr.image_lines is not None else None,
                corr.image_lines,
            )
        except CameraEstimationError as exc:
            raise _fail(exc, stage, diag) from None
        diag["initial_source"] = "linear"
    else:
        pose0 = CameraPose.from_params(initial_pose.to_params(), pp)
        diag["initial_source"] = "external"

    conic_groups = corr.conic_point_groups()
    if corr.unassigned_conic_points.shape[0]:
        stage = enter(Stage.CONIC_ASSIGNMENT)
        try:
            assigned = assign_points_to_conics(pose0, corr.world_conics, corr.unassigned_conic_points)
        except CameraEstimationError as exc:
            raise _fail(exc, stage, diag) from None
        conic_groups = [np.concatenate([g, a], axis=0) for g, a in zip(conic_groups, assigned)]
        diag["conic_assignment_counts"] = [int(a.shape[0]) for a in assigned]

    stage = enter(Stage.NONLINEAR_REFINEMENT)
    model = build_residual_model(
        pp,
        corr.world_points,
        corr.image_points,
        corr.world_lines,
        corr.line_point_groups(),
        corr.world_conics,
        conic_groups,
        conic_eps=opts.conic_eps,
    )
    try:
        refined = refine_model(model, pose0, opts)
    except CameraEstimationError as exc:
        raise _fail(exc, stage, diag) from None

    stage = enter(Stage.RESULT)
    diag.update(refined.diagnostics)
    return CalibrationResult(
        pose=refined.pose,
        initial_pose=pose0,
        stage=stage,
        diagnostics=diag,
        conic_groups=tuple(conic_groups),
    )
