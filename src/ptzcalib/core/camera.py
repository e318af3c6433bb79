from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ptzcalib.core.geometry import as_world_points, from_homogeneous


N_POSE_PARAMS = 7


@dataclass(frozen=True)
class CalibrationMatrix:
    """Square pixels, zero skew, fixed principal point."""

    focal_length: float
    principal_point: tuple[float, float]

    def K(self) -> np.ndarray:
        px, py = (float(v) for v in self.principal_point)
        f = float(self.focal_length)
        return np.array([[f, 0.0, px], [0.0, f, py], [0.0, 0.0, 1.0]], dtype=np.float64)


@dataclass(frozen=True)
class Rotation3D:
    """
    World -> camera rotation stored as a Rodrigues (axis * angle) vector.

    `matrix()` and `from_matrix()` use the same convention as projection, so a
    rotation survives the round trip through the optimizer parameters.
    """

    rotvec: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))

    def __post_init__(self) -> None:
        object.__setattr__(self, "rotvec", np.asarray(self.rotvec, dtype=np.float64).reshape(3).copy())

    def matrix(self) -> np.ndarray:
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        return Rot.from_rotvec(self.rotvec).as_matrix()

    @classmethod
    def from_matrix(cls, R: np.ndarray) -> "Rotation3D":
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        return cls(rotvec=Rot.from_matrix(R).as_rotvec())

    @classmethod
    def identity(cls) -> "Rotation3D":
        return cls(rotvec=np.zeros((3,), dtype=np.float64))


@dataclass(frozen=True)
class CameraPose:
    """
    Perspective camera x ~ K R (X - C).

    The world model lives on the z = 0 plane, so the camera restricted to that
    plane is the homography formed by columns 0, 1 and 3 of P.
    """

    calibration: CalibrationMatrix
    rotation: Rotation3D
    center: np.ndarray  # (3,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "center", np.asarray(self.center, dtype=np.float64).reshape(3).copy())

    @property
    def focal_length(self) -> float:
        return float(self.calibration.focal_length)

    @property
    def principal_point(self) -> tuple[float, float]:
        px, py = self.calibration.principal_point
        return float(px), float(py)

    def K(self) -> np.ndarray:
        return self.calibration.K()

    def R(self) -> np.ndarray:
        return self.rotation.matrix()

    def t(self) -> np.ndarray:
        return -self.R() @ self.center

    def P(self) -> np.ndarray:
        R = self.R()
        Rt = np.concatenate([R, (-R @ self.center).reshape(3, 1)], axis=1)
        return self.K() @ Rt

    def plane_homography(self) -> np.ndarray:
        """World plane (x, y, 1) -> image homography."""
        return self.P()[:, [0, 1, 3]]

    def project_homogeneous(self, XYZ: np.ndarray) -> np.ndarray:
        XYZ = np.asarray(XYZ, dtype=np.float64).reshape(-1, 3)
        Xh = np.concatenate([XYZ, np.ones((XYZ.shape[0], 1), dtype=np.float64)], axis=1)
        return (self.P() @ Xh.T).T

    def project(self, XYZ: np.ndarray) -> np.ndarray:
        """
        Project world points (N,3) or plane points (N,2) to pixels (N,2).
        Points on the camera's principal plane come back as NaN.
        """
        return from_homogeneous(self.project_homogeneous(as_world_points(XYZ)))

    def depths(self, XYZ: np.ndarray) -> np.ndarray:
        XYZ = as_world_points(XYZ)
        return ((self.R() @ (XYZ - self.center).T).T)[:, 2]

    def to_params(self) -> np.ndarray:
        return np.concatenate(
            [[float(self.calibration.focal_length)], self.rotation.rotvec, self.center], axis=0
        ).astype(np.float64)

    @classmethod
    def from_params(cls, params: np.ndarray, principal_point: tuple[float, float]) -> "CameraPose":
        p = np.asarray(params, dtype=np.float64).reshape(-1)
        if p.size != N_POSE_PARAMS:
            raise ValueError(f"expected {N_POSE_PARAMS} camera parameters, got {p.size}")
        px, py = (float(v) for v in principal_point)
        return cls(
            calibration=CalibrationMatrix(focal_length=float(p[0]), principal_point=(px, py)),
            rotation=Rotation3D(rotvec=p[1:4]),
            center=p[4:7],
        )

    @classmethod
    def from_rotation_matrix(
        cls,
        *,
        focal_length: float,
        principal_point: tuple[float, float],
        R: np.ndarray,
        center: np.ndarray,
    ) -> "CameraPose":
        px, py = (float(v) for v in principal_point)
        return cls(
            calibration=CalibrationMatrix(focal_length=float(focal_length), principal_point=(px, py)),
            rotation=Rotation3D.from_matrix(R),
            center=np.asarray(center, dtype=np.float64).reshape(3),
        )
