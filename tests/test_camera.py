import numpy as np
import pytest

from ptzcalib.core.camera import CalibrationMatrix, CameraPose, Rotation3D
from ptzcalib.core.geometry import apply_homography, as_world_points
from ptzcalib.sim.synthetic import look_at_pose


def _pose() -> CameraPose:
    return look_at_pose(
        focal_length=1200.0,
        principal_point=(960.0, 540.0),
        center=np.array([3.0, -30.0, 15.0]),
        target=np.array([0.0, 0.0, 0.0]),
    )


def test_plane_homography_matches_projection():
    pose = _pose()
    rng = np.random.default_rng(0)
    xy = rng.uniform(-20.0, 20.0, size=(50, 2))
    uv_p = pose.project(xy)
    uv_h = apply_homography(pose.plane_homography(), xy)
    assert np.max(np.abs(uv_p - uv_h)) < 1e-9


def test_look_at_target_projects_to_principal_point():
    pose = _pose()
    uv = pose.project(np.zeros((1, 3)))
    assert np.allclose(uv[0], [960.0, 540.0], atol=1e-9)
    assert pose.depths(np.zeros((1, 3)))[0] > 0.0


def test_params_roundtrip_keeps_projection():
    pose = _pose()
    pose2 = CameraPose.from_params(pose.to_params(), pose.principal_point)
    assert np.allclose(pose.P(), pose2.P(), atol=1e-12)


def test_rotation_matrix_roundtrip():
    rng = np.random.default_rng(1)
    for _ in range(10):
        rv = rng.normal(scale=1.0, size=3)
        R = Rotation3D(rotvec=rv).matrix()
        assert np.allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert np.allclose(Rotation3D.from_matrix(R).matrix(), R, atol=1e-12)


def test_translation_is_minus_rotated_center():
    pose = _pose()
    assert np.allclose(pose.t(), -pose.R() @ pose.center)
    assert np.allclose(pose.P()[:, 3], pose.K() @ pose.t())


def test_calibration_matrix_layout():
    K = CalibrationMatrix(focal_length=800.0, principal_point=(320.0, 240.0)).K()
    assert np.array_equal(K, np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]]))


def test_from_params_rejects_wrong_size():
    with pytest.raises(ValueError):
        CameraPose.from_params(np.zeros(6), (0.0, 0.0))


def test_world_points_must_lie_on_plane():
    with pytest.raises(ValueError):
        as_world_points(np.array([[0.0, 0.0, 1.0]]))
    assert as_world_points(np.array([[1.0, 2.0]])).shape == (1, 3)
