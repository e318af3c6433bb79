from __future__ import annotations

import logging

import numpy as np

from ptzcalib.core.geometry import (
    conditioning_transform,
    from_homogeneous,
    line_through,
    signed_line_distance,
    to_homogeneous,
)
from ptzcalib.errors import DegenerateGeometry

logger = logging.getLogger(__name__)

# Relative size of the 8th singular value below which the DLT system is rank deficient.
RANK_TOL = 1e-10

_INVALID_RESIDUAL = 1e6


def _segments_to_lines(segments: np.ndarray) -> np.ndarray:
    seg = np.asarray(segments, dtype=np.float64).reshape(-1, 2, 2)
    return line_through(to_homogeneous(seg[:, 0]), to_homogeneous(seg[:, 1]))


def _normalize_lines(lines: np.ndarray) -> np.ndarray:
    lines = np.asarray(lines, dtype=np.float64).reshape(-1, 3)
    n = np.hypot(lines[:, 0], lines[:, 1])
    return lines / np.where(n < 1e-300, 1.0, n)[:, None]


def _conditioned(
    src_points: np.ndarray,
    dst_points: np.ndarray,
    src_segments: np.ndarray,
    dst_segments: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Condition both planes; returns (T_src, T_dst, src_n, dst_n, src_seg_n, dst_lines_n)."""
    src_all = np.concatenate([src_points.reshape(-1, 2), src_segments.reshape(-1, 2)], axis=0)
    dst_all = np.concatenate([dst_points.reshape(-1, 2), dst_segments.reshape(-1, 2)], axis=0)
    T_src = conditioning_transform(src_all)
    T_dst = conditioning_transform(dst_all)

    def tf(T: np.ndarray, xy: np.ndarray) -> np.ndarray:
        return from_homogeneous((T @ to_homogeneous(xy).T).T)

    src_n = tf(T_src, src_points)
    dst_n = tf(T_dst, dst_points)
    src_seg_n = tf(T_src, src_segments.reshape(-1, 2)).reshape(-1, 2, 2)
    dst_lines_n = _normalize_lines(_segments_to_lines(tf(T_dst, dst_segments.reshape(-1, 2)).reshape(-1, 2, 2)))
    return T_src, T_dst, src_n, dst_n, src_seg_n, dst_lines_n


def _dlt_rows(src_n: np.ndarray, dst_n: np.ndarray, src_seg_n: np.ndarray, dst_lines_n: np.ndarray) -> np.ndarray:
    rows: list[np.ndarray] = []
    for (x, y), (u, v) in zip(src_n, dst_n):
        p = np.array([x, y, 1.0], dtype=np.float64)
        zero = np.zeros((3,), dtype=np.float64)
        rows.append(np.concatenate([zero, -p, v * p]))
        rows.append(np.concatenate([p, zero, -u * p]))
    # Incidence: l^T H q = 0 for each source endpoint q of a segment lying on line l.
    for seg, line in zip(src_seg_n, dst_lines_n):
        for q in seg:
            rows.append(np.kron(line, np.array([q[0], q[1], 1.0], dtype=np.float64)))
    if not rows:
        return np.zeros((0, 9), dtype=np.float64)
    return np.stack(rows, axis=0)


def homography_from_points_and_lines(
    src_points: np.ndarray,
    dst_points: np.ndarray,
    src_segments: np.ndarray | None = None,
    dst_segments: np.ndarray | None = None,
) -> np.ndarray:
    """
    Normalized DLT for H with dst ~ H src.

    Point pairs give two rows each. Each line pair gives one incidence row per
    endpoint of the source segment: the mapped endpoint must lie on the
    destination line (the destination segment only defines that line).

    Raises DegenerateGeometry if the system does not pin down H up to scale.
    """
    src_points = np.asarray(src_points, dtype=np.float64).reshape(-1, 2)
    dst_points = np.asarray(dst_points, dtype=np.float64).reshape(-1, 2)
    if src_segments is None:
        src_segments = np.zeros((0, 2, 2), dtype=np.float64)
    if dst_segments is None:
        dst_segments = np.zeros((0, 2, 2), dtype=np.float64)
    src_segments = np.asarray(src_segments, dtype=np.float64).reshape(-1, 2, 2)
    dst_segments = np.asarray(dst_segments, dtype=np.float64).reshape(-1, 2, 2)
    if src_points.shape[0] != dst_points.shape[0]:
        raise ValueError("src_points and dst_points must have the same length")
    if src_segments.shape[0] != dst_segments.shape[0]:
        raise ValueError("src_segments and dst_segments must have the same length")

    T_src, T_dst, src_n, dst_n, src_seg_n, dst_lines_n = _conditioned(
        src_points, dst_points, src_segments, dst_segments
    )
    A = _dlt_rows(src_n, dst_n, src_seg_n, dst_lines_n)
    if A.shape[0] < 8:
        raise DegenerateGeometry(f"homography needs 8 independent equations, got {A.shape[0]}")
    if A.shape[0] < 9:
        A = np.concatenate([A, np.zeros((9 - A.shape[0], 9), dtype=np.float64)], axis=0)

    _, s, Vt = np.linalg.svd(A)
    logger.debug("homography DLT singular values: %s", np.array2string(s, precision=3))
    if not np.all(np.isfinite(s)) or s[0] <= 0.0 or s[7] <= RANK_TOL * s[0]:
        raise DegenerateGeometry("homography system is rank deficient (collinear or repeated correspondences)")

    Hn = Vt[-1].reshape(3, 3)
    H = np.linalg.inv(T_dst) @ Hn @ T_src
    return H / np.linalg.norm(H)


def refine_homography(
    H0: np.ndarray,
    src_points: np.ndarray,
    dst_points: np.ndarray,
    src_segments: np.ndarray | None = None,
    dst_segments: np.ndarray | None = None,
    *,
    max_nfev: int = 200,
) -> tuple[np.ndarray, dict[str, float]]:
    """
    Polish H (dst ~ H src) by minimizing destination-plane point residuals and
    signed distances of mapped source segment endpoints to the destination lines.

    Works in conditioned coordinates; the 9 entries are re-normalized on every
    evaluation so the free scale does not matter.
    """
    from scipy.optimize import least_squares  # type: ignore

    src_points = np.asarray(src_points, dtype=np.float64).reshape(-1, 2)
    dst_points = np.asarray(dst_points, dtype=np.float64).reshape(-1, 2)
    if src_segments is None:
        src_segments = np.zeros((0, 2, 2), dtype=np.float64)
    if dst_segments is None:
        dst_segments = np.zeros((0, 2, 2), dtype=np.float64)
    src_segments = np.asarray(src_segments, dtype=np.float64).reshape(-1, 2, 2)
    dst_segments = np.asarray(dst_segments, dtype=np.float64).reshape(-1, 2, 2)

    T_src, T_dst, src_n, dst_n, src_seg_n, dst_lines_n = _conditioned(
        src_points, dst_points, src_segments, dst_segments
    )
    Hn0 = T_dst @ np.asarray(H0, dtype=np.float64).reshape(3, 3) @ np.linalg.inv(T_src)
    Hn0 = Hn0 / np.linalg.norm(Hn0)
    seg_pts = src_seg_n.reshape(-1, 2)
    seg_lines = np.repeat(dst_lines_n, 2, axis=0)

    def fun(p: np.ndarray) -> np.ndarray:
        Hn = np.asarray(p, dtype=np.float64).reshape(3, 3)
        Hn = Hn / np.linalg.norm(Hn)
        parts: list[np.ndarray] = []
        if src_n.shape[0]:
            mapped = from_homogeneous((Hn @ to_homogeneous(src_n).T).T)
            parts.append((mapped - dst_n).reshape(-1))
        if seg_pts.shape[0]:
            mapped = from_homogeneous((Hn @ to_homogeneous(seg_pts).T).T)
            parts.append(signed_line_distance(seg_lines, mapped))
        r = np.concatenate(parts, axis=0)
        return np.nan_to_num(r, nan=_INVALID_RESIDUAL, posinf=_INVALID_RESIDUAL, neginf=-_INVALID_RESIDUAL)

    r0 = fun(Hn0.reshape(-1))
    sol = least_squares(fun, Hn0.reshape(-1), method="trf", max_nfev=int(max_nfev))
    cost0 = 0.5 * float(r0 @ r0)
    diag = {
        "h_opt_initial_cost": cost0,
        "h_opt_cost": float(sol.cost),
        "h_opt_nfev": float(sol.nfev),
        "h_opt_success": float(bool(sol.success)),
    }
    if not np.all(np.isfinite(sol.x)) or float(sol.cost) > cost0:
        logger.debug("homography polish did not improve the linear estimate (%.3g -> %.3g)", cost0, sol.cost)
        Hn = Hn0
    else:
        Hn = sol.x.reshape(3, 3)
    H = np.linalg.inv(T_dst) @ Hn @ T_src
    return H / np.linalg.norm(H), diag
