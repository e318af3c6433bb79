import numpy as np
import pytest

from ptzcalib.calib.residuals import (
    CONIC_DISTANCE_EPS,
    ConicResidualBlock,
    LineResidualBlock,
    PointResidualBlock,
    ResidualModel,
    build_residual_model,
)
from ptzcalib.core.camera import CameraPose
from ptzcalib.sim.synthetic import look_at_pose, synthetic_rink_scene


def _pose() -> CameraPose:
    return look_at_pose(
        focal_length=1000.0,
        principal_point=(960.0, 540.0),
        center=np.array([0.0, -35.0, 18.0]),
        target=np.array([0.0, 0.0, 0.0]),
    )


def _scene():
    return synthetic_rink_scene(_pose(), n_line_samples=8, n_conic_samples=12)


def test_blocks_are_ordered_points_lines_conics():
    corr = _scene()
    blocks = [
        ConicResidualBlock.build(corr.world_conics, corr.image_conic_points),
        LineResidualBlock.build(corr.world_lines, corr.image_line_points),
        PointResidualBlock.build(corr.world_points, corr.image_points),
    ]
    model = ResidualModel(blocks, (960.0, 540.0))
    assert [b.kind for b in model.blocks] == ["point", "line", "conic"]


def test_sizes_count_every_observation():
    corr = _scene()
    model = build_residual_model(
        (960.0, 540.0),
        corr.world_points,
        corr.image_points,
        corr.world_lines,
        corr.image_line_points,
        corr.world_conics,
        corr.image_conic_points,
    )
    n_line = sum(g.shape[0] for g in corr.image_line_points)
    n_conic = sum(g.shape[0] for g in corr.image_conic_points)
    assert model.block_sizes() == {"point": 2 * corr.world_points.shape[0], "line": n_line, "conic": n_conic}
    assert model.size == 2 * corr.world_points.shape[0] + n_line + n_conic
    assert model.residuals(_pose()).shape == (model.size,)


def test_residuals_vanish_at_generating_pose():
    corr = _scene()
    pose = _pose()
    pts = PointResidualBlock.build(corr.world_points, corr.image_points).evaluate(pose)
    lines = LineResidualBlock.build(corr.world_lines, corr.image_line_points).evaluate(pose)
    assert np.max(np.abs(pts)) < 1e-8
    assert np.max(np.abs(lines)) < 1e-8


def test_conic_residuals_sit_on_stabilizer_floor():
    corr = _scene()
    r = ConicResidualBlock.build(corr.world_conics, corr.image_conic_points).evaluate(_pose())
    assert np.allclose(r, np.sqrt(CONIC_DISTANCE_EPS), rtol=1e-3)


def test_consistent_lines_and_conics_do_not_raise_cost():
    corr = _scene()
    pose = _pose()
    pp = pose.principal_point
    base = build_residual_model(pp, corr.world_points, corr.image_points)
    full = build_residual_model(
        pp,
        corr.world_points,
        corr.image_points,
        corr.world_lines,
        corr.image_line_points,
        corr.world_conics,
        corr.image_conic_points,
    )
    n_conic = full.block_sizes()["conic"]
    floor = 0.5 * n_conic * CONIC_DISTANCE_EPS
    assert full.cost(pose) <= base.cost(pose) + floor * (1.0 + 1e-3) + 1e-12


def test_call_with_params_matches_pose_evaluation():
    corr = _scene()
    pose = _pose()
    model = build_residual_model(pose.principal_point, corr.world_points, corr.image_points)
    params = pose.to_params() + np.array([5.0, 0.001, -0.002, 0.0, 0.1, 0.0, -0.1])
    expected = model.residuals(CameraPose.from_params(params, pose.principal_point))
    assert np.allclose(model(params), expected)
    assert np.max(np.abs(model(params))) > 0.1


def test_lines_measure_perpendicular_distance():
    pose = _pose()
    world_line = np.array([[[0.0, -10.0], [0.0, 10.0]]])
    ends = pose.project(world_line[0])
    direction = (ends[1] - ends[0]) / np.linalg.norm(ends[1] - ends[0])
    normal = np.array([-direction[1], direction[0]])
    samples = 0.5 * (ends[0] + ends[1]) + np.array([[0.0], [3.0], [-2.0]]) * normal[None, :]
    r = LineResidualBlock.build(world_line, [samples]).evaluate(pose)
    assert np.allclose(np.abs(r), [0.0, 3.0, 2.0], atol=1e-6)
    assert r[1] * r[2] < 0


def test_empty_groups_contribute_nothing():
    corr = _scene()
    groups = [np.zeros((0, 2)) for _ in corr.world_conics]
    block = ConicResidualBlock.build(corr.world_conics, groups)
    assert block.size == 0
    assert block.evaluate(_pose()).shape == (0,)


def test_block_validation():
    corr = _scene()
    with pytest.raises(ValueError):
        PointResidualBlock.build(corr.world_points, corr.image_points[:-1])
    with pytest.raises(ValueError):
        LineResidualBlock.build(corr.world_lines, corr.image_line_points[:-1])
    with pytest.raises(ValueError):
        ConicResidualBlock.build(corr.world_conics, corr.image_conic_points, eps=-1.0)
