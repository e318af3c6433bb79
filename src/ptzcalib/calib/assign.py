from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from ptzcalib.core.camera import CameraPose
from ptzcalib.core.conic import Conic, conic_point_distances_squared, project_conic
from ptzcalib.core.geometry import as_image_points

logger = logging.getLogger(__name__)


def conic_distance_matrix(pose: CameraPose, world_conics: Sequence[Conic], image_points: np.ndarray) -> np.ndarray:
    """Squared geometric distances (N, n_conics) from image points to projected conics."""
    pts = as_image_points(image_points, name="unassigned conic points")
    D = np.empty((pts.shape[0], len(world_conics)), dtype=np.float64)
    for j, conic in enumerate(world_conics):
        D[:, j] = conic_point_distances_squared(project_conic(pose, conic).normalized(), pts)
    return D


def assign_points_to_conics(
    pose: CameraPose,
    world_conics: Sequence[Conic],
    image_points: np.ndarray,
) -> list[np.ndarray]:
    """
    Group unlabeled image points by their nearest projected world conic.

    Every point is assigned (no rejection threshold); equal distances go to the
    lowest conic index. Returns one (K_i,2) array per conic, in input order.
    """
    world_conics = list(world_conics)
    pts = as_image_points(image_points, name="unassigned conic points")
    if not world_conics:
        if pts.shape[0]:
            raise ValueError("cannot assign conic points without world conics")
        return []
    if pts.shape[0] == 0:
        return [np.zeros((0, 2), dtype=np.float64) for _ in world_conics]

    # A conic that could not be evaluated must never win the argmin.
    D = np.nan_to_num(conic_distance_matrix(pose, world_conics, pts), nan=np.inf)
    # argmin returns the first minimum, which is the lowest-index tie break.
    nearest = np.argmin(D, axis=1)
    groups = [pts[nearest == j].copy() for j in range(len(world_conics))]
    logger.debug("conic assignment counts: %s", [int(g.shape[0]) for g in groups])
    return groups
