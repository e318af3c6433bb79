from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.polynomial import Polynomial

from ptzcalib.core.camera import CameraPose
from ptzcalib.core.geometry import as_image_points
from ptzcalib.errors import SingularHomography

# Homographies with a larger condition number are treated as non-invertible.
MAX_HOMOGRAPHY_CONDITION = 1e12

_ROOT_IMAG_TOL = 1e-6
_POLE_TOL = 1e-9
_ON_CURVE_TOL = 1e-6


@dataclass(frozen=True)
class Conic:
    """
    Planar conic a x^2 + b xy + c y^2 + d x + e y + f = 0.
    """

    a: float
    b: float
    c: float
    d: float
    e: float
    f: float

    def coefficients(self) -> np.ndarray:
        return np.array([self.a, self.b, self.c, self.d, self.e, self.f], dtype=np.float64)

    def matrix(self) -> np.ndarray:
        """Symmetric 3x3 form: x^T C x = 0 with x = (x, y, 1)."""
        a, b, c, d, e, f = (float(v) for v in self.coefficients())
        return np.array(
            [[a, b / 2.0, d / 2.0], [b / 2.0, c, e / 2.0], [d / 2.0, e / 2.0, f]],
            dtype=np.float64,
        )

    @classmethod
    def from_matrix(cls, C: np.ndarray) -> "Conic":
        """
        Inverse of `matrix()`; off-diagonal pairs are summed, so a non-symmetric
        input is read through its symmetric part.
        """
        C = np.asarray(C, dtype=np.float64).reshape(3, 3)
        return cls(
            a=float(C[0, 0]),
            b=float(C[0, 1] + C[1, 0]),
            c=float(C[1, 1]),
            d=float(C[0, 2] + C[2, 0]),
            e=float(C[1, 2] + C[2, 1]),
            f=float(C[2, 2]),
        )

    @classmethod
    def circle(cls, cx: float, cy: float, r: float) -> "Conic":
        if r <= 0:
            raise ValueError("circle radius must be > 0")
        return cls.ellipse(cx, cy, r, r, 0.0)

    @classmethod
    def ellipse(cls, cx: float, cy: float, rx: float, ry: float, angle: float = 0.0) -> "Conic":
        """Ellipse with semi-axes (rx, ry), major axis rotated by `angle` radians."""
        if rx <= 0 or ry <= 0:
            raise ValueError("ellipse semi-axes must be > 0")
        ca, sa = float(np.cos(angle)), float(np.sin(angle))
        # Axis-aligned form in the ellipse frame, then rotate and translate.
        Q = np.array([[ca, -sa], [sa, ca]], dtype=np.float64)
        A = Q @ np.diag([1.0 / (rx * rx), 1.0 / (ry * ry)]) @ Q.T
        center = np.array([cx, cy], dtype=np.float64)
        g = -A @ center
        f = float(center @ A @ center) - 1.0
        C = np.array(
            [[A[0, 0], A[0, 1], g[0]], [A[1, 0], A[1, 1], g[1]], [g[0], g[1], f]],
            dtype=np.float64,
        )
        return cls.from_matrix(C)

    def evaluate(self, xy: np.ndarray) -> np.ndarray:
        """Algebraic value of the conic at each point (N,)."""
        xy = as_image_points(xy)
        x, y = xy[:, 0], xy[:, 1]
        return self.a * x * x + self.b * x * y + self.c * y * y + self.d * x + self.e * y + self.f

    def normalized(self) -> "Conic":
        C = self.matrix()
        n = float(np.linalg.norm(C))
        if n < 1e-300:
            return self
        return Conic.from_matrix(C / n)


def transform_conic(H: np.ndarray, conic: Conic) -> Conic:
    """
    Map a conic through the projective map H (source plane -> target plane):

      C' = H^-T C H^-1
    """
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    if not np.all(np.isfinite(H)):
        raise SingularHomography("homography has non-finite entries")
    cond = float(np.linalg.cond(H))
    if not np.isfinite(cond) or cond > MAX_HOMOGRAPHY_CONDITION:
        raise SingularHomography(f"homography is not invertible (condition number {cond:.3g})")
    H_inv = np.linalg.inv(H)
    C_proj = H_inv.T @ conic.matrix() @ H_inv
    return Conic.from_matrix(C_proj)


def project_conic(pose: CameraPose, conic: Conic) -> Conic:
    """Image of a world-plane conic under the camera."""
    return transform_conic(pose.plane_homography(), conic)


def conic_point_distances(conic: Conic, xy: np.ndarray) -> np.ndarray:
    """
    Euclidean (geometric) distance from each point (N,2) to the conic curve.
    """
    return np.sqrt(conic_point_distances_squared(conic, xy))


def conic_point_distances_squared(conic: Conic, xy: np.ndarray) -> np.ndarray:
    """
    Squared geometric distance from each point to the conic.

    The closest conic point x to p satisfies x = (I + lam A)^-1 (p - lam g) for the
    conic x^T A x + 2 g^T x + f = 0. With p moved to the origin and A diagonalised,
    the constraint becomes a quartic in lam; each real root gives a candidate foot
    point. Roots where 1 + lam * alpha_i = 0 (p on a symmetry axis) are resolved by
    solving the conic for the free coordinate.
    """
    xy = as_image_points(xy)
    out = np.empty((xy.shape[0],), dtype=np.float64)
    if xy.shape[0] == 0:
        return out

    C = conic.matrix()
    A = C[:2, :2]
    alphas, V = np.linalg.eigh(A)
    abar = float(np.max(np.abs(alphas)))
    line_like = abar <= 1e-14 * float(np.linalg.norm(C))
    for i, p in enumerate(xy):
        g = V.T @ (C[:2, 2] + A @ p)
        f = float(p @ A @ p + 2.0 * C[:2, 2] @ p + C[2, 2])
        if line_like:
            out[i] = f * f / max(4.0 * float(g @ g), 1e-300)
            continue
        # Divide by the largest eigenvalue, then rescale lengths so that every
        # coefficient is O(1) before forming the quartic.
        a = alphas / abar
        gam = g / abar
        phi = f / abar
        L = max(float(np.max(np.abs(gam))), float(np.sqrt(abs(phi))))
        if L < 1e-300:
            out[i] = 0.0
            continue
        out[i] = L * L * _distance_squared_at_origin(a, gam / L, phi / (L * L))
    return out


def _distance_squared_at_origin(alphas: np.ndarray, g: np.ndarray, f: float) -> float:
    """
    Squared distance from the origin to alpha_0 x^2 + alpha_1 y^2 + 2 g.x + f = 0.
    Coefficients are expected to be O(1) with max |alpha_i| = 1.
    """
    if abs(f) < 1e-15:
        return 0.0

    D = [Polynomial([1.0, float(a)]) for a in alphas]
    N = [Polynomial([0.0, -float(gi)]) for gi in g]
    poly = f * D[0] ** 2 * D[1] ** 2
    for i in range(2):
        j = 1 - i
        poly = poly + (float(alphas[i]) * N[i] ** 2 + 2.0 * float(g[i]) * N[i] * D[i]) * D[j] ** 2
    poly = poly.trim(tol=1e-14)

    best = np.inf
    if poly.degree() > 0:
        for lam in poly.roots():
            if abs(lam.imag) > _ROOT_IMAG_TOL * (1.0 + abs(lam.real)):
                continue
            lam = float(lam.real)
            den = 1.0 + lam * alphas
            if np.all(np.abs(den) > _POLE_TOL):
                x = -lam * g / den
                # Inaccurate multiple roots can land off the curve.
                res = float(alphas @ (x * x) + 2.0 * g @ x + f)
                if abs(res) <= _ON_CURVE_TOL * (1.0 + float(np.abs(alphas) @ (x * x)) + 2.0 * float(np.abs(g) @ np.abs(x))):
                    best = min(best, float(x @ x))

    # Candidates on the symmetry axes (lam = -1/alpha_i).
    for i in range(2):
        if abs(alphas[i]) < _POLE_TOL:
            continue
        j = 1 - i
        lam = -1.0 / float(alphas[i])
        den_j = 1.0 + lam * float(alphas[j])
        if abs(den_j) <= _POLE_TOL:
            # Circle: every conic point is a foot point when p sits at the centre.
            if float(np.max(np.abs(g))) < 1e-9:
                r2 = -f / float(alphas[i])
                if r2 >= 0.0:
                    best = min(best, r2)
            continue
        xj = -lam * float(g[j]) / den_j
        c0 = float(alphas[j]) * xj * xj + 2.0 * float(g[j]) * xj + f
        disc = float(g[i]) ** 2 - float(alphas[i]) * c0
        if disc < 0.0:
            continue
        for sign in (1.0, -1.0):
            xi = (-float(g[i]) + sign * np.sqrt(disc)) / float(alphas[i])
            best = min(best, xi * xi + xj * xj)

    if np.isfinite(best):
        return best

    # Degenerate conic: first-order (Sampson) approximation.
    grad2 = 4.0 * float(g @ g)
    return f * f / max(grad2, 1e-300)
