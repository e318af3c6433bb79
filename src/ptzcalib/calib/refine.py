from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np

from ptzcalib.calib.assign import assign_points_to_conics
from ptzcalib.calib.residuals import CONIC_DISTANCE_EPS, ResidualModel, build_residual_model
from ptzcalib.core.camera import N_POSE_PARAMS, CameraPose
from ptzcalib.core.conic import Conic
from ptzcalib.errors import OptimizationDidNotConverge, UnderconstrainedSystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolverOptions:
    """Levenberg-Marquardt settings for one refinement call."""

    max_nfev: int = 2000
    ftol: float = 1e-10
    xtol: float = 1e-10
    gtol: float = 1e-10
    conic_eps: float = CONIC_DISTANCE_EPS
    x_scale: Literal["jac"] | float = "jac"


@dataclass(frozen=True)
class RefinementResult:
    pose: CameraPose
    diagnostics: dict[str, Any]


def refine_model(
    model: ResidualModel,
    initial_pose: CameraPose,
    options: SolverOptions | None = None,
) -> RefinementResult:
    """
    Minimize the model's residuals over [f, rotvec, center] with MINPACK's
    Levenberg-Marquardt and a finite-difference Jacobian.

    The principal point of `initial_pose` stays fixed.
    """
    from scipy.optimize import least_squares  # type: ignore

    opts = options or SolverOptions()
    n_res = model.size
    if n_res <= N_POSE_PARAMS:
        raise UnderconstrainedSystem(
            f"{n_res} residuals cannot constrain {N_POSE_PARAMS} camera parameters (need > {N_POSE_PARAMS})"
        )

    x0 = initial_pose.to_params()
    r0 = model(x0)
    sol = least_squares(
        model,
        x0,
        method="lm",
        x_scale=opts.x_scale,
        ftol=float(opts.ftol),
        xtol=float(opts.xtol),
        gtol=float(opts.gtol),
        max_nfev=int(opts.max_nfev),
    )
    pose = CameraPose.from_params(sol.x, model.principal_point)
    r = np.asarray(sol.fun, dtype=np.float64)
    diag: dict[str, Any] = {
        "opt_initial_cost": 0.5 * float(r0 @ r0),
        "opt_cost": float(sol.cost),
        "opt_nfev": int(sol.nfev),
        "opt_status": int(sol.status),
        "opt_success": bool(sol.success),
        "opt_message": str(sol.message),
        "n_residuals": int(n_res),
        "rms_residual": float(np.sqrt(np.mean(r * r))) if r.size else 0.0,
        "block_sizes": model.block_sizes(),
    }

    if not sol.success or not np.all(np.isfinite(sol.x)):
        logger.warning("camera refinement did not converge: %s", sol.message)
        raise OptimizationDidNotConverge(
            f"camera refinement did not converge: {sol.message}", pose=pose, diagnostics=diag
        )
    logger.info(
        "camera refinement converged: cost %.4g -> %.4g in %d evaluations (rms %.4g)",
        diag["opt_initial_cost"],
        diag["opt_cost"],
        diag["opt_nfev"],
        diag["rms_residual"],
    )
    return RefinementResult(pose=pose, diagnostics=diag)


def refine(
    world_points: np.ndarray,
    image_points: np.ndarray,
    initial_pose: CameraPose,
    *,
    options: SolverOptions | None = None,
) -> CameraPose:
    """Point-only refinement."""
    model = build_residual_model(initial_pose.principal_point, world_points, image_points)
    return refine_model(model, initial_pose, options).pose


def refine_with_lines(
    world_points: np.ndarray,
    image_points: np.ndarray,
    world_lines: np.ndarray,
    image_line_point_groups: Sequence[np.ndarray],
    initial_pose: CameraPose,
    *,
    options: SolverOptions | None = None,
) -> CameraPose:
    """
    Points plus image samples known to lie on the image of each world segment.
    """
    model = build_residual_model(
        initial_pose.principal_point,
        world_points,
        image_points,
        world_lines,
        image_line_point_groups,
    )
    return refine_model(model, initial_pose, options).pose


def refine_with_lines_and_conics(
    world_points: np.ndarray,
    image_points: np.ndarray,
    world_lines: np.ndarray,
    image_line_point_groups: Sequence[np.ndarray],
    world_conics: Sequence[Conic],
    image_conic_point_groups: Sequence[np.ndarray],
    initial_pose: CameraPose,
    *,
    options: SolverOptions | None = None,
) -> CameraPose:
    opts = options or SolverOptions()
    model = build_residual_model(
        initial_pose.principal_point,
        world_points,
        image_points,
        world_lines,
        image_line_point_groups,
        world_conics,
        image_conic_point_groups,
        conic_eps=opts.conic_eps,
    )
    return refine_model(model, initial_pose, opts).pose


def refine_with_auto_conic_assignment(
    world_points: np.ndarray,
    image_points: np.ndarray,
    world_lines: np.ndarray,
    image_line_point_groups: Sequence[np.ndarray],
    world_conics: Sequence[Conic],
    unassigned_image_conic_points: np.ndarray,
    initial_pose: CameraPose,
    *,
    options: SolverOptions | None = None,
) -> CameraPose:
    """
    Like `refine_with_lines_and_conics`, but conic samples are unlabeled: each is
    first assigned to the nearest conic as projected by `initial_pose`.
    """
    groups = assign_points_to_conics(initial_pose, world_conics, unassigned_image_conic_points)
    return refine_with_lines_and_conics(
        world_points,
        image_points,
        world_lines,
        image_line_point_groups,
        world_conics,
        groups,
        initial_pose,
        options=options,
    )
