from __future__ import annotations

import numpy as np


_PLANE_Z_TOL = 1e-9


def as_image_points(uv: np.ndarray, name: str = "image points") -> np.ndarray:
    """Copy pixel coordinates into a fresh (N,2) float64 array."""
    uv = np.array(uv, dtype=np.float64, copy=True)
    if uv.size == 0:
        return np.zeros((0, 2), dtype=np.float64)
    if uv.ndim == 1 and uv.size == 2:
        uv = uv.reshape(1, 2)
    if uv.ndim != 2 or uv.shape[1] != 2:
        raise ValueError(f"{name} must be (N,2)")
    return uv


def as_world_points(xyz: np.ndarray, name: str = "world points") -> np.ndarray:
    """
    Copy world-plane points into a fresh (N,3) float64 array.

    Accepts (N,2) plane coordinates (z = 0 implied) or (N,3) points that already
    lie on the z = 0 plane.
    """
    xyz = np.array(xyz, dtype=np.float64, copy=True)
    if xyz.size == 0:
        return np.zeros((0, 3), dtype=np.float64)
    if xyz.ndim == 1 and xyz.size in (2, 3):
        xyz = xyz.reshape(1, -1)
    if xyz.ndim != 2 or xyz.shape[1] not in (2, 3):
        raise ValueError(f"{name} must be (N,2) or (N,3)")
    if xyz.shape[1] == 2:
        xyz = np.concatenate([xyz, np.zeros((xyz.shape[0], 1), dtype=np.float64)], axis=1)
    if np.any(np.abs(xyz[:, 2]) > _PLANE_Z_TOL):
        raise ValueError(f"{name} must lie on the z = 0 plane")
    return xyz


def as_world_segments(segments: np.ndarray, name: str = "world lines") -> np.ndarray:
    """Copy world line segments into a fresh (N,2,3) array (endpoints on z = 0)."""
    seg = np.array(segments, dtype=np.float64, copy=True)
    if seg.size == 0:
        return np.zeros((0, 2, 3), dtype=np.float64)
    if seg.ndim == 2 and seg.shape[0] == 2:
        seg = seg.reshape(1, 2, -1)
    if seg.ndim != 3 or seg.shape[1] != 2 or seg.shape[2] not in (2, 3):
        raise ValueError(f"{name} must be (N,2,2) or (N,2,3)")
    pts = as_world_points(seg.reshape(-1, seg.shape[2]), name=name)
    return pts.reshape(-1, 2, 3)


def as_image_segments(segments: np.ndarray, name: str = "image lines") -> np.ndarray:
    seg = np.array(segments, dtype=np.float64, copy=True)
    if seg.size == 0:
        return np.zeros((0, 2, 2), dtype=np.float64)
    if seg.ndim == 2 and seg.shape == (2, 2):
        seg = seg.reshape(1, 2, 2)
    if seg.ndim != 3 or seg.shape[1:] != (2, 2):
        raise ValueError(f"{name} must be (N,2,2)")
    return seg


def as_point_groups(groups, name: str = "point groups") -> list[np.ndarray]:
    """Copy a sequence of point sets into a list of (K_i,2) arrays (K_i may be 0)."""
    if groups is None:
        return []
    return [as_image_points(g, name=f"{name}[{i}]") for i, g in enumerate(groups)]


def require_same_length(a: np.ndarray | list, b: np.ndarray | list, names: str) -> None:
    if len(a) != len(b):
        raise ValueError(f"{names} must have the same length ({len(a)} != {len(b)})")


def to_homogeneous(xy: np.ndarray) -> np.ndarray:
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    return np.concatenate([xy, np.ones((xy.shape[0], 1), dtype=np.float64)], axis=1)


def from_homogeneous(xyw: np.ndarray) -> np.ndarray:
    """
    Dehomogenize (N,3) -> (N,2). Rows at (numerically) infinity come back as NaN.
    """
    xyw = np.asarray(xyw, dtype=np.float64).reshape(-1, 3)
    out = np.full((xyw.shape[0], 2), np.nan, dtype=np.float64)
    w = xyw[:, 2]
    good = np.isfinite(w) & (np.abs(w) > 1e-12)
    out[good] = xyw[good, :2] / w[good, None]
    return out


def apply_homography(H: np.ndarray, xy: np.ndarray) -> np.ndarray:
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    return from_homogeneous((H @ to_homogeneous(xy).T).T)


def line_through(p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    """Homogeneous line(s) through two homogeneous points (row-wise cross product)."""
    return np.cross(np.asarray(p1, dtype=np.float64), np.asarray(p2, dtype=np.float64))


def signed_line_distance(lines: np.ndarray, xy: np.ndarray) -> np.ndarray:
    """
    Signed perpendicular distance from points (N,2) to homogeneous lines (N,3).

    A line with a vanishing normal (coincident endpoints) yields NaN.
    """
    lines = np.asarray(lines, dtype=np.float64).reshape(-1, 3)
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    norm = np.hypot(lines[:, 0], lines[:, 1])
    norm = np.where(norm < 1e-300, np.nan, norm)
    return (lines[:, 0] * xy[:, 0] + lines[:, 1] * xy[:, 1] + lines[:, 2]) / norm


def conditioning_transform(xy: np.ndarray) -> np.ndarray:
    """
    Similarity T moving the centroid to the origin with mean distance sqrt(2).
    """
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    mean = xy.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(xy - mean, axis=1)))
    s = 1.0 if mean_dist < 1e-12 else np.sqrt(2.0) / mean_dist
    return np.array(
        [[s, 0.0, -s * mean[0]], [0.0, s, -s * mean[1]], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )
