import numpy as np
import pytest

from ptzcalib.calib.refine import (
    SolverOptions,
    refine,
    refine_model,
    refine_with_auto_conic_assignment,
    refine_with_lines,
    refine_with_lines_and_conics,
)
from ptzcalib.calib.residuals import build_residual_model
from ptzcalib.core.camera import CameraPose
from ptzcalib.errors import OptimizationDidNotConverge, UnderconstrainedSystem
from ptzcalib.sim.synthetic import look_at_pose, synthetic_rink_scene


def _pose() -> CameraPose:
    return look_at_pose(
        focal_length=1000.0,
        principal_point=(960.0, 540.0),
        center=np.array([0.0, -35.0, 18.0]),
        target=np.array([0.0, 0.0, 0.0]),
    )


def _perturbed(pose: CameraPose) -> CameraPose:
    delta = np.array([40.0, 0.01, -0.008, 0.005, 0.6, -0.8, 0.5])
    return CameraPose.from_params(pose.to_params() + delta, pose.principal_point)


def test_single_point_pair_is_underconstrained():
    pose = _pose()
    wp = np.array([[0.0, 0.0, 0.0]])
    with pytest.raises(UnderconstrainedSystem):
        refine(wp, pose.project(wp), pose)


def test_points_recover_camera_from_perturbed_start():
    pose = _pose()
    corr = synthetic_rink_scene(pose)
    refined = refine(corr.world_points, corr.image_points, _perturbed(pose))
    assert abs(refined.focal_length - 1000.0) < 1e-1
    assert np.linalg.norm(refined.center - pose.center) < 1e-3
    assert refined.principal_point == pose.principal_point


def test_lines_recover_camera_from_perturbed_start():
    pose = _pose()
    corr = synthetic_rink_scene(pose, n_line_samples=8)
    refined = refine_with_lines(
        corr.world_points[:3],
        corr.image_points[:3],
        corr.world_lines,
        corr.image_line_points,
        _perturbed(pose),
    )
    assert abs(refined.focal_length - 1000.0) < 1e-1
    assert np.linalg.norm(refined.center - pose.center) < 1e-3


def test_lines_and_conics_recover_camera_from_perturbed_start():
    pose = _pose()
    corr = synthetic_rink_scene(pose, n_line_samples=8, n_conic_samples=12)
    refined = refine_with_lines_and_conics(
        corr.world_points,
        corr.image_points,
        corr.world_lines,
        corr.image_line_points,
        corr.world_conics,
        corr.image_conic_points,
        _perturbed(pose),
    )
    assert abs(refined.focal_length - 1000.0) < 1e-1
    assert np.linalg.norm(refined.center - pose.center) < 1e-3


def test_auto_conic_assignment_recovers_camera():
    pose = _pose()
    corr = synthetic_rink_scene(pose, n_line_samples=8, n_conic_samples=12, label_conics=False)
    assert corr.unassigned_conic_points.shape[0] > 0
    start = CameraPose.from_params(
        pose.to_params() + np.array([10.0, 0.002, 0.0, -0.002, 0.1, 0.1, -0.1]), pose.principal_point
    )
    refined = refine_with_auto_conic_assignment(
        corr.world_points,
        corr.image_points,
        corr.world_lines,
        corr.image_line_points,
        corr.world_conics,
        corr.unassigned_conic_points,
        start,
    )
    assert abs(refined.focal_length - 1000.0) < 1e-1
    assert np.linalg.norm(refined.center - pose.center) < 1e-3


def test_noisy_points_stay_close():
    pose = _pose()
    corr = synthetic_rink_scene(pose, noise_px=0.5, rng=np.random.default_rng(3))
    refined = refine(corr.world_points, corr.image_points, _perturbed(pose))
    assert abs(refined.focal_length - 1000.0) < 30.0
    assert np.linalg.norm(refined.center - pose.center) < 1.5


def test_diagnostics_report_solver_outcome():
    pose = _pose()
    corr = synthetic_rink_scene(pose)
    model = build_residual_model(pose.principal_point, corr.world_points, corr.image_points)
    res = refine_model(model, _perturbed(pose))
    d = res.diagnostics
    assert d["opt_success"] is True
    assert d["opt_cost"] <= d["opt_initial_cost"]
    assert d["n_residuals"] == model.size
    assert d["block_sizes"] == {"point": model.size}
    assert d["rms_residual"] < 1e-6


def test_evaluation_budget_exhaustion_carries_pose():
    pose = _pose()
    corr = synthetic_rink_scene(pose)
    with pytest.raises(OptimizationDidNotConverge) as info:
        refine(corr.world_points, corr.image_points, _perturbed(pose), options=SolverOptions(max_nfev=1))
    assert isinstance(info.value.pose, CameraPose)
    assert "opt_nfev" in info.value.diagnostics
