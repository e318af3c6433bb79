from ptzcalib.api.pipeline import CalibrationResult, Correspondences, Stage, calibrate_camera
from ptzcalib.calib.assign import assign_points_to_conics
from ptzcalib.calib.linear import estimate_initial
from ptzcalib.calib.refine import (
    refine,
    refine_with_auto_conic_assignment,
    refine_with_lines,
    refine_with_lines_and_conics,
)

__all__ = [
    "CalibrationResult",
    "Correspondences",
    "Stage",
    "assign_points_to_conics",
    "calibrate_camera",
    "estimate_initial",
    "refine",
    "refine_with_auto_conic_assignment",
    "refine_with_lines",
    "refine_with_lines_and_conics",
]
