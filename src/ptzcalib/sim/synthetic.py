from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ptzcalib.api.pipeline import Correspondences
from ptzcalib.core.camera import CameraPose
from ptzcalib.core.conic import Conic


@dataclass(frozen=True)
class RinkLayout:
    """
    Ice-hockey rink markings in metres, origin at centre ice, x along the rink.
    """

    length_m: float = 60.96
    width_m: float = 25.91
    blue_line_x_m: float = 7.62
    goal_line_x_m: float = 26.82
    circle_radius_m: float = 4.57
    neutral_dot_x_m: float = 6.10
    end_dot_x_m: float = 20.12
    dot_y_m: float = 6.71

    def points(self) -> np.ndarray:
        """Face-off spots (9,2)."""
        pts = [(0.0, 0.0)]
        for sx in (-1.0, 1.0):
            for sy in (-1.0, 1.0):
                pts.append((sx * self.neutral_dot_x_m, sy * self.dot_y_m))
                pts.append((sx * self.end_dot_x_m, sy * self.dot_y_m))
        return np.asarray(pts, dtype=np.float64)

    def lines(self) -> np.ndarray:
        """Centre, blue and goal lines plus the two side boards (M,2,2)."""
        hy = 0.5 * self.width_m
        hx = 0.5 * self.length_m
        segs = [[(0.0, -hy), (0.0, hy)]]
        for x in (-self.blue_line_x_m, self.blue_line_x_m, -self.goal_line_x_m, self.goal_line_x_m):
            segs.append([(x, -hy), (x, hy)])
        segs.append([(-hx, -hy), (hx, -hy)])
        segs.append([(-hx, hy), (hx, hy)])
        return np.asarray(segs, dtype=np.float64)

    def circles(self) -> list[Conic]:
        """Centre circle and the four end-zone face-off circles."""
        out = [Conic.circle(0.0, 0.0, self.circle_radius_m)]
        for sx in (-1.0, 1.0):
            for sy in (-1.0, 1.0):
                out.append(Conic.circle(sx * self.end_dot_x_m, sy * self.dot_y_m, self.circle_radius_m))
        return out


def look_at_pose(
    *,
    focal_length: float,
    principal_point: tuple[float, float],
    center: np.ndarray,
    target: np.ndarray,
    up: tuple[float, float, float] = (0.0, 0.0, 1.0),
) -> CameraPose:
    """
    Camera at `center` with its optical axis through `target`; image x to the
    right and image y pointing away from `up`.
    """
    C = np.asarray(center, dtype=np.float64).reshape(3)
    T = np.asarray(target, dtype=np.float64).reshape(3)
    z = T - C
    nz = float(np.linalg.norm(z))
    if nz < 1e-12:
        raise ValueError("target must differ from center")
    z = z / nz
    x = np.cross(z, np.asarray(up, dtype=np.float64).reshape(3))
    if float(np.linalg.norm(x)) < 1e-9:
        # Looking along `up`: any horizontal x axis will do.
        x = np.cross(z, np.array([0.0, 1.0, 0.0]))
    x = x / np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.stack([x, y, z], axis=0)
    return CameraPose.from_rotation_matrix(
        focal_length=focal_length, principal_point=principal_point, R=R, center=C
    )


def sample_conic_points(conic: Conic, n: int, *, start: float = 0.0, stop: float = 2.0 * np.pi) -> np.ndarray:
    """
    `n` points on an ellipse, evenly spaced in its parametric angle over [start, stop).
    """
    C = conic.matrix()
    A = C[:2, :2]
    g = C[:2, 2]
    if np.linalg.det(A) <= 0:
        raise ValueError("conic is not an ellipse")
    c0 = -np.linalg.solve(A, g)
    k = -(float(C[2, 2]) + float(g @ c0))
    evals, evecs = np.linalg.eigh(A)
    if evals[0] < 0:
        evals, k = -evals, -k
    if k <= 0:
        raise ValueError("conic is an imaginary or point ellipse")
    t = np.linspace(start, stop, int(n), endpoint=False)
    u = np.stack([np.sqrt(k / evals[0]) * np.cos(t), np.sqrt(k / evals[1]) * np.sin(t)], axis=1)
    return c0[None, :] + u @ evecs.T


def sample_segment_points(segment: np.ndarray, n: int) -> np.ndarray:
    """`n` evenly spaced points from one endpoint to the other (both included)."""
    seg = np.asarray(segment, dtype=np.float64).reshape(2, -1)[:, :2]
    t = np.linspace(0.0, 1.0, int(n))[:, None]
    return (1.0 - t) * seg[0][None, :] + t * seg[1][None, :]


def _visible(pose: CameraPose, xy: np.ndarray, image_size: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    uv = pose.project(xy)
    w, h = image_size
    ok = (pose.depths(xy) > 0.0) & np.all(np.isfinite(uv), axis=1)
    ok &= (uv[:, 0] >= 0.0) & (uv[:, 0] < w) & (uv[:, 1] >= 0.0) & (uv[:, 1] < h)
    return uv, ok


def synthetic_rink_scene(
    pose: CameraPose,
    *,
    image_size: tuple[int, int] = (1920, 1080),
    layout: RinkLayout | None = None,
    noise_px: float = 0.0,
    rng: np.random.Generator | None = None,
    n_line_samples: int = 12,
    n_conic_samples: int = 32,
    label_conics: bool = True,
) -> Correspondences:
    """
    Project the rink markings through `pose` and keep what falls in the image.

    Lines keep their projected (noisy) endpoints as annotated image segments plus
    the visible samples; circles with fewer than 5 visible samples are dropped.
    With `label_conics=False` every conic sample goes to `unassigned_conic_points`.
    """
    layout = layout or RinkLayout()
    rng = rng or np.random.default_rng(0)

    def noisy(uv: np.ndarray) -> np.ndarray:
        if noise_px <= 0.0 or uv.shape[0] == 0:
            return uv
        return uv + rng.normal(0.0, noise_px, size=uv.shape)

    wp = layout.points()
    uv, ok = _visible(pose, wp, image_size)
    world_points = wp[ok]
    image_points = noisy(uv[ok])

    world_lines: list[np.ndarray] = []
    image_lines: list[np.ndarray] = []
    line_samples: list[np.ndarray] = []
    for seg in layout.lines():
        s_uv, s_ok = _visible(pose, sample_segment_points(seg, n_line_samples), image_size)
        if int(s_ok.sum()) < 2:
            continue
        ends = pose.project(seg)
        if not np.all(np.isfinite(ends)) or np.any(pose.depths(seg) <= 0.0):
            continue
        world_lines.append(seg)
        image_lines.append(noisy(ends))
        line_samples.append(noisy(s_uv[s_ok]))

    conics: list[Conic] = []
    conic_samples: list[np.ndarray] = []
    for conic in layout.circles():
        c_uv, c_ok = _visible(pose, sample_conic_points(conic, n_conic_samples), image_size)
        if int(c_ok.sum()) < 5:
            continue
        conics.append(conic)
        conic_samples.append(noisy(c_uv[c_ok]))

    if label_conics or not conics:
        image_conic_points = tuple(conic_samples) if conics else None
        unassigned = np.zeros((0, 2), dtype=np.float64)
    else:
        image_conic_points = None
        unassigned = np.concatenate(conic_samples, axis=0)
        unassigned = unassigned[rng.permutation(unassigned.shape[0])]

    return Correspondences(
        world_points=world_points,
        image_points=image_points,
        world_lines=np.asarray(world_lines, dtype=np.float64).reshape(-1, 2, 2),
        image_lines=np.asarray(image_lines, dtype=np.float64).reshape(-1, 2, 2),
        image_line_points=tuple(line_samples),
        world_conics=tuple(conics),
        image_conic_points=image_conic_points,
        unassigned_conic_points=unassigned,
    )
