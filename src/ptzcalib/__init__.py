from ptzcalib import errors
from ptzcalib.api import (
    CalibrationResult,
    Correspondences,
    Stage,
    assign_points_to_conics,
    calibrate_camera,
    estimate_initial,
    refine,
    refine_with_auto_conic_assignment,
    refine_with_lines,
    refine_with_lines_and_conics,
)
from ptzcalib.calib.refine import SolverOptions
from ptzcalib.core.camera import CalibrationMatrix, CameraPose, Rotation3D
from ptzcalib.core.conic import Conic, project_conic, transform_conic

__all__ = [
    "errors",
    "CalibrationMatrix",
    "CalibrationResult",
    "CameraPose",
    "Conic",
    "Correspondences",
    "Rotation3D",
    "SolverOptions",
    "Stage",
    "assign_points_to_conics",
    "calibrate_camera",
    "estimate_initial",
    "project_conic",
    "refine",
    "refine_with_auto_conic_assignment",
    "refine_with_lines",
    "refine_with_lines_and_conics",
    "transform_conic",
]
