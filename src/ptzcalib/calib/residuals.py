from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import ClassVar

import numpy as np

from ptzcalib.core.camera import CameraPose
from ptzcalib.core.conic import Conic, conic_point_distances_squared, project_conic
from ptzcalib.core.geometry import (
    as_image_points,
    as_point_groups,
    as_world_points,
    as_world_segments,
    line_through,
    require_same_length,
    signed_line_distance,
)
from ptzcalib.errors import SingularHomography

# Stabilizer under the square root of the conic residual; keeps sqrt(d^2 + eps)
# differentiable at d = 0. Not a physical quantity.
CONIC_DISTANCE_EPS = 1e-7

# Stand-in for residuals that cannot be evaluated (point at infinity, singular
# projection) so the solver sees a large but finite cost.
INVALID_RESIDUAL = 1e6


class ResidualBlock:
    """
    One family of residuals evaluated at a camera pose.

    Subclasses declare `kind`, report their output length through `size` and
    implement `evaluate(pose)` returning exactly `size` values.
    """

    kind: ClassVar[str] = "abstract"

    @property
    def size(self) -> int:
        raise NotImplementedError

    def evaluate(self, pose: CameraPose) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class PointResidualBlock(ResidualBlock):
    """(x, y) reprojection error of each world point; 2 residuals per pair."""

    kind: ClassVar[str] = "point"

    world_points: np.ndarray  # (N,3)
    image_points: np.ndarray  # (N,2)

    @classmethod
    def build(cls, world_points: np.ndarray, image_points: np.ndarray) -> "PointResidualBlock":
        wp = as_world_points(world_points)
        ip = as_image_points(image_points)
        require_same_length(wp, ip, "world_points and image_points")
        return cls(world_points=wp, image_points=ip)

    @property
    def size(self) -> int:
        return 2 * int(self.world_points.shape[0])

    def evaluate(self, pose: CameraPose) -> np.ndarray:
        if self.world_points.shape[0] == 0:
            return np.zeros((0,), dtype=np.float64)
        return (self.image_points - pose.project(self.world_points)).reshape(-1)


@dataclass(frozen=True)
class LineResidualBlock(ResidualBlock):
    """
    Signed distance from image samples to the projected world line; 1 per sample.

    The image line is the join of the projected segment endpoints, taken in
    homogeneous coordinates so an endpoint near infinity still defines it.
    """

    kind: ClassVar[str] = "line"

    world_lines: np.ndarray  # (M,2,3)
    point_groups: tuple[np.ndarray, ...]  # M x (K_i,2)

    @classmethod
    def build(cls, world_lines: np.ndarray, point_groups: Sequence[np.ndarray]) -> "LineResidualBlock":
        wl = as_world_segments(world_lines)
        groups = as_point_groups(point_groups, name="image line points")
        require_same_length(wl, groups, "world_lines and image line point groups")
        return cls(world_lines=wl, point_groups=tuple(groups))

    @property
    def size(self) -> int:
        return int(sum(g.shape[0] for g in self.point_groups))

    def evaluate(self, pose: CameraPose) -> np.ndarray:
        if self.size == 0:
            return np.zeros((0,), dtype=np.float64)
        ends = pose.project_homogeneous(self.world_lines.reshape(-1, 3)).reshape(-1, 2, 3)
        lines = line_through(ends[:, 0], ends[:, 1])
        counts = [g.shape[0] for g in self.point_groups]
        per_sample = np.repeat(lines, counts, axis=0)
        samples = np.concatenate(self.point_groups, axis=0)
        return signed_line_distance(per_sample, samples)


@dataclass(frozen=True)
class ConicResidualBlock(ResidualBlock):
    """
    sqrt(d^2 + eps) with d the geometric distance from each image sample to the
    projected world conic; 1 per sample.
    """

    kind: ClassVar[str] = "conic"

    world_conics: tuple[Conic, ...]
    point_groups: tuple[np.ndarray, ...]  # one (K_i,2) array per conic
    eps: float = CONIC_DISTANCE_EPS

    @classmethod
    def build(
        cls,
        world_conics: Sequence[Conic],
        point_groups: Sequence[np.ndarray],
        eps: float = CONIC_DISTANCE_EPS,
    ) -> "ConicResidualBlock":
        conics = tuple(world_conics)
        groups = as_point_groups(point_groups, name="image conic points")
        require_same_length(conics, groups, "world_conics and image conic point groups")
        if eps < 0:
            raise ValueError("eps must be >= 0")
        return cls(world_conics=conics, point_groups=tuple(groups), eps=float(eps))

    @property
    def size(self) -> int:
        return int(sum(g.shape[0] for g in self.point_groups))

    def evaluate(self, pose: CameraPose) -> np.ndarray:
        parts: list[np.ndarray] = []
        for conic, pts in zip(self.world_conics, self.point_groups):
            if pts.shape[0] == 0:
                continue
            try:
                img_conic = project_conic(pose, conic).normalized()
            except SingularHomography:
                parts.append(np.full((pts.shape[0],), INVALID_RESIDUAL, dtype=np.float64))
                continue
            d2 = conic_point_distances_squared(img_conic, pts)
            parts.append(np.sqrt(d2 + self.eps))
        if not parts:
            return np.zeros((0,), dtype=np.float64)
        return np.concatenate(parts, axis=0)


class ResidualModel:
    """
    Flat residual vector over heterogeneous blocks, in the order points, lines,
    conics, whatever order the blocks are handed in.
    """

    _ORDER: ClassVar[dict[str, int]] = {"point": 0, "line": 1, "conic": 2}

    def __init__(self, blocks: Sequence[ResidualBlock], principal_point: tuple[float, float]) -> None:
        self.blocks: tuple[ResidualBlock, ...] = tuple(
            sorted(blocks, key=lambda b: self._ORDER.get(b.kind, len(self._ORDER)))
        )
        self.principal_point = (float(principal_point[0]), float(principal_point[1]))

    @property
    def size(self) -> int:
        return int(sum(b.size for b in self.blocks))

    def block_sizes(self) -> dict[str, int]:
        sizes: dict[str, int] = {}
        for b in self.blocks:
            sizes[b.kind] = sizes.get(b.kind, 0) + b.size
        return sizes

    def residuals(self, pose: CameraPose) -> np.ndarray:
        parts = [b.evaluate(pose) for b in self.blocks if b.size]
        if not parts:
            return np.zeros((0,), dtype=np.float64)
        r = np.concatenate(parts, axis=0).astype(np.float64, copy=False)
        return np.nan_to_num(r, nan=INVALID_RESIDUAL, posinf=INVALID_RESIDUAL, neginf=-INVALID_RESIDUAL)

    def __call__(self, params: np.ndarray) -> np.ndarray:
        return self.residuals(CameraPose.from_params(params, self.principal_point))

    def cost(self, pose: CameraPose) -> float:
        r = self.residuals(pose)
        return 0.5 * float(r @ r)


def build_residual_model(
    principal_point: tuple[float, float],
    world_points: np.ndarray | None = None,
    image_points: np.ndarray | None = None,
    world_lines: np.ndarray | None = None,
    image_line_point_groups: Sequence[np.ndarray] | None = None,
    world_conics: Sequence[Conic] | None = None,
    image_conic_point_groups: Sequence[np.ndarray] | None = None,
    *,
    conic_eps: float = CONIC_DISTANCE_EPS,
) -> ResidualModel:
    blocks: list[ResidualBlock] = [
        PointResidualBlock.build(
            world_points if world_points is not None else np.zeros((0, 3)),
            image_points if image_points is not None else np.zeros((0, 2)),
        )
    ]
    if world_lines is not None or image_line_point_groups is not None:
        blocks.append(
            LineResidualBlock.build(
                world_lines if world_lines is not None else np.zeros((0, 2, 3)),
                [] if image_line_point_groups is None else image_line_point_groups,
            )
        )
    if world_conics is not None or image_conic_point_groups is not None:
        blocks.append(
            ConicResidualBlock.build(
                [] if world_conics is None else world_conics,
                [] if image_conic_point_groups is None else image_conic_point_groups,
                eps=conic_eps,
            )
        )
    return ResidualModel(blocks, principal_point)
