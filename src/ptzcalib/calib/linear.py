from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from ptzcalib.core.camera import CalibrationMatrix, CameraPose
from ptzcalib.core.geometry import (
    as_image_points,
    as_image_segments,
    as_world_points,
    as_world_segments,
    require_same_length,
)
from ptzcalib.core.homography import homography_from_points_and_lines, refine_homography
from ptzcalib.errors import AmbiguousSolution, DegenerateGeometry, InsufficientData

logger = logging.getLogger(__name__)

MIN_CONSTRAINTS = 4

# Out-of-plane column entries below this fraction of the translation row mean the
# view is fronto-parallel and the focal length is not observable.
_FRONTO_PARALLEL_TOL = 1e-9


def count_constraints(n_points: int, n_lines: int) -> int:
    """A point pair is one constraint; a line pair contributes two incidence constraints."""
    return int(n_points) + 2 * int(n_lines)


def focal_from_homography(H_world_to_image: np.ndarray, principal_point: tuple[float, float]) -> float:
    """
    Focal length of a square-pixel camera with known principal point.

    With the principal point moved to the origin, K^-1 H = s [r1 r2 t]; r1 and r2
    being orthonormal gives two equations linear in w = 1/f^2, solved in the
    least-squares sense.
    """
    H = np.asarray(H_world_to_image, dtype=np.float64).reshape(3, 3)
    px, py = (float(v) for v in principal_point)
    T = np.array([[1.0, 0.0, -px], [0.0, 1.0, -py], [0.0, 0.0, 1.0]], dtype=np.float64)
    M = T @ H
    M = M / np.linalg.norm(M)
    h1 = M[:, 0]
    h2 = M[:, 1]

    if max(abs(h1[2]), abs(h2[2])) <= _FRONTO_PARALLEL_TOL * float(np.linalg.norm(M[2])):
        raise DegenerateGeometry("fronto-parallel view: focal length is not observable from the homography")

    a = np.array(
        [h1[0] * h2[0] + h1[1] * h2[1], h1[0] ** 2 + h1[1] ** 2 - h2[0] ** 2 - h2[1] ** 2],
        dtype=np.float64,
    )
    b = np.array([h1[2] * h2[2], h1[2] ** 2 - h2[2] ** 2], dtype=np.float64)
    denom = float(a @ a)
    if denom <= 0.0:
        raise DegenerateGeometry("focal length constraints are degenerate")
    w = -float(a @ b) / denom
    if not np.isfinite(w) or w <= 0.0:
        raise DegenerateGeometry(f"homography implies a non-positive squared focal length (1/f^2 = {w:.3g})")
    return float(1.0 / np.sqrt(w))


def _nearest_rotation(R: np.ndarray) -> np.ndarray:
    U, _, Vt = np.linalg.svd(R)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, 2] *= -1.0
        R = U @ Vt
    return R


def decompose_homography(
    K: np.ndarray, H_world_to_image: np.ndarray
) -> tuple[list[np.ndarray], list[np.ndarray]]:
    """
    Split K^-1 H = s [r1 r2 t] into the two (R, t) candidates s > 0 and s < 0.

    The homography fixes everything but the sign of s, so planar decomposition
    always yields exactly two candidates.
    """
    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    B = np.linalg.inv(K) @ np.asarray(H_world_to_image, dtype=np.float64).reshape(3, 3)
    n1 = float(np.linalg.norm(B[:, 0]))
    n2 = float(np.linalg.norm(B[:, 1]))
    if n1 < 1e-300 or n2 < 1e-300:
        raise DegenerateGeometry("homography columns vanish after calibration")
    lam = 2.0 / (n1 + n2)

    rotations: list[np.ndarray] = []
    translations: list[np.ndarray] = []
    for sign in (1.0, -1.0):
        r1 = sign * lam * B[:, 0]
        r2 = sign * lam * B[:, 1]
        r3 = np.cross(r1, r2)
        R = _nearest_rotation(np.column_stack([r1, r2, r3]))
        rotations.append(R)
        translations.append(sign * lam * B[:, 2])
    return rotations, translations


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return -np.asarray(R, dtype=np.float64).reshape(3, 3).T @ np.asarray(t, dtype=np.float64).reshape(3)


def select_positive_depth_candidate(
    rotations: Sequence[np.ndarray], translations: Sequence[np.ndarray]
) -> tuple[np.ndarray, np.ndarray]:
    """
    Keep the candidate whose camera centre lies above the world plane (C_z > 0).

    Returns (R, C). Both or neither candidate above the plane is ambiguous.
    """
    require_same_length(rotations, translations, "rotations and translations")
    if len(rotations) != 2:
        raise ValueError(f"expected exactly two decomposition candidates, got {len(rotations)}")
    centers = [camera_center(R, t) for R, t in zip(rotations, translations)]
    above = [bool(c[2] > 0.0) for c in centers]
    logger.debug("decomposition candidate centre heights: %s", [float(c[2]) for c in centers])
    if all(above):
        logger.warning("both homography decompositions put the camera above the plane")
        raise AmbiguousSolution("both decomposition candidates have the camera above the world plane")
    if not any(above):
        logger.warning("both homography decompositions put the camera below the plane")
        raise AmbiguousSolution("both decomposition candidates have the camera below the world plane")
    k = above.index(True)
    return np.asarray(rotations[k], dtype=np.float64), centers[k]


def estimate_initial(
    world_points: np.ndarray,
    image_points: np.ndarray,
    principal_point: tuple[float, float],
    world_lines: np.ndarray | None = None,
    image_lines: np.ndarray | None = None,
    *,
    polish_max_nfev: int = 200,
) -> CameraPose:
    """
    Closed-form camera from point (and optional line segment) correspondences.

    - `world_points` (N,2|3) on z = 0, `image_points` (N,2)
    - `world_lines` (M,2,2|3) world segments, `image_lines` (M,2,2) image segments;
      the image endpoints only need to lie on the image of the world line.

    Steps: image -> world homography (linear, then polished), focal length,
    decomposition into two poses, selection of the one above the plane.
    """
    wp = as_world_points(world_points)
    ip = as_image_points(image_points)
    require_same_length(wp, ip, "world_points and image_points")
    wl = as_world_segments(world_lines if world_lines is not None else np.zeros((0, 2, 3)))
    il = as_image_segments(image_lines if image_lines is not None else np.zeros((0, 2, 2)))
    require_same_length(wl, il, "world_lines and image_lines")

    n_constraints = count_constraints(wp.shape[0], wl.shape[0])
    if n_constraints < MIN_CONSTRAINTS:
        raise InsufficientData(
            f"need >= {MIN_CONSTRAINTS} point/line constraints, got {n_constraints} "
            f"({wp.shape[0]} points, {wl.shape[0]} lines)"
        )

    # Image -> world: line incidence stays linear with image endpoints.
    H_iw = homography_from_points_and_lines(ip, wp[:, :2], il, wl[:, :, :2])
    H_iw, diag = refine_homography(H_iw, ip, wp[:, :2], il, wl[:, :, :2], max_nfev=polish_max_nfev)
    logger.debug("homography polish: %s", diag)

    if not np.all(np.isfinite(H_iw)) or abs(float(np.linalg.det(H_iw))) < 1e-300:
        raise DegenerateGeometry("image to world homography is singular")
    H_wi = np.linalg.inv(H_iw)

    f = focal_from_homography(H_wi, principal_point)
    calib = CalibrationMatrix(focal_length=f, principal_point=(float(principal_point[0]), float(principal_point[1])))
    rotations, translations = decompose_homography(calib.K(), H_wi)
    R, C = select_positive_depth_candidate(rotations, translations)
    logger.debug("linear initialization: f=%.3f C=%s", f, np.array2string(C, precision=4))
    return CameraPose.from_rotation_matrix(focal_length=f, principal_point=calib.principal_point, R=R, center=C)
