import numpy as np
import pytest

from ptzcalib.core.conic import Conic, conic_point_distances, project_conic, transform_conic
from ptzcalib.errors import SingularHomography
from ptzcalib.sim.synthetic import look_at_pose, sample_conic_points


def _brute_force_distances(conic: Conic, xy: np.ndarray, n: int = 20000) -> np.ndarray:
    curve = sample_conic_points(conic, n)
    d = np.linalg.norm(xy[:, None, :] - curve[None, :, :], axis=2)
    return d.min(axis=1)


def test_identity_transform_returns_input():
    conic = Conic(1.0, 0.3, 2.0, -4.0, 1.5, -7.0)
    out = transform_conic(np.eye(3), conic)
    assert np.allclose(out.coefficients(), conic.coefficients(), atol=1e-12)


def test_translation_moves_circle():
    H = np.array([[1.0, 0.0, 2.0], [0.0, 1.0, 3.0], [0.0, 0.0, 1.0]])
    out = transform_conic(H, Conic.circle(0.0, 0.0, 1.0)).normalized()
    expected = Conic.circle(2.0, 3.0, 1.0).normalized()
    assert np.allclose(out.coefficients(), expected.coefficients(), atol=1e-12)


def test_singular_homography_is_rejected():
    H = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 0.0]])
    with pytest.raises(SingularHomography):
        transform_conic(H, Conic.circle(0.0, 0.0, 1.0))
    with pytest.raises(SingularHomography):
        transform_conic(np.full((3, 3), np.nan), Conic.circle(0.0, 0.0, 1.0))


def test_projected_conic_contains_projected_points():
    pose = look_at_pose(
        focal_length=1000.0,
        principal_point=(960.0, 540.0),
        center=np.array([0.0, -35.0, 18.0]),
        target=np.array([0.0, 0.0, 0.0]),
    )
    circle = Conic.circle(0.0, 0.0, 4.57)
    uv = pose.project(sample_conic_points(circle, 40))
    img = project_conic(pose, circle).normalized()
    assert np.max(conic_point_distances(img, uv)) < 1e-6


def test_circle_distances():
    circle = Conic.circle(1.0, 1.0, 2.0)
    pts = np.array([[1.0, 1.0], [4.0, 1.0], [1.5, 1.0], [1.0, -3.0], [1.0 + 2.0 * np.cos(0.7), 1.0 + 2.0 * np.sin(0.7)]])
    d = conic_point_distances(circle, pts)
    assert np.allclose(d, [2.0, 1.0, 1.5, 2.0, 0.0], atol=1e-9)


def test_axis_aligned_ellipse_distances():
    ellipse = Conic.ellipse(0.0, 0.0, 3.0, 1.0)
    pts = np.array([[0.0, 0.0], [5.0, 0.0], [0.0, 3.0], [-3.0, 0.0]])
    d = conic_point_distances(ellipse, pts)
    assert np.allclose(d, [1.0, 2.0, 2.0, 0.0], atol=1e-9)


def test_rotated_ellipse_matches_brute_force():
    rng = np.random.default_rng(0)
    ellipse = Conic.ellipse(10.0, -4.0, 6.0, 2.5, angle=0.4)
    pts = rng.uniform([-2.0, -14.0], [22.0, 6.0], size=(40, 2))
    d = conic_point_distances(ellipse, pts)
    ref = _brute_force_distances(ellipse, pts)
    assert np.max(np.abs(d - ref)) < 1e-3


def test_distances_are_scale_invariant_in_coefficients():
    ellipse = Conic.ellipse(300.0, 200.0, 80.0, 30.0, angle=-0.2)
    scaled = Conic(*(1e-6 * ellipse.coefficients()))
    pts = np.array([[300.0, 200.0], [420.0, 260.0], [250.0, 150.0]])
    assert np.allclose(conic_point_distances(ellipse, pts), conic_point_distances(scaled, pts), rtol=1e-7)


def test_hyperbola_distances():
    # x^2 - y^2 - 1 = 0; from (3, 0) the nearest points are (1.5, +-sqrt(1.25)), not the vertex.
    hyperbola = Conic(1.0, 0.0, -1.0, 0.0, 0.0, -1.0)
    d = conic_point_distances(hyperbola, np.array([[3.0, 0.0], [0.0, 0.0]]))
    assert np.allclose(d, [np.sqrt(3.5), 1.0], atol=1e-9)


def test_line_like_conic_distance():
    # 2x - 4 = 0, i.e. the line x = 2.
    line = Conic(0.0, 0.0, 0.0, 2.0, 0.0, -4.0)
    d = conic_point_distances(line, np.array([[5.0, 1.0], [2.0, -3.0]]))
    assert np.allclose(d, [3.0, 0.0], atol=1e-12)
