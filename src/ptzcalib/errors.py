from __future__ import annotations

from typing import Any


class CameraEstimationError(RuntimeError):
    """
    Base class for failures of the camera estimation engine.

    `stage` is filled in by the pipeline with the stage that failed and `stages`
    with the stage trail ending in "failed"; direct calls to the estimators leave
    them as None and ().
    """

    def __init__(self, message: str, *, stage: Any = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.stages: tuple[str, ...] = ()


class InsufficientData(CameraEstimationError):
    pass


class DegenerateGeometry(CameraEstimationError):
    pass


class AmbiguousSolution(CameraEstimationError):
    pass


class UnderconstrainedSystem(CameraEstimationError):
    pass


class SingularHomography(CameraEstimationError):
    pass


class OptimizationDidNotConverge(CameraEstimationError):
    """
    The only failure that still carries an (approximate) camera.

    `pose` is the last solver iterate and `diagnostics` the solver summary.
    """

    def __init__(
        self,
        message: str,
        *,
        pose: Any = None,
        diagnostics: dict[str, Any] | None = None,
        stage: Any = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.pose = pose
        self.diagnostics = dict(diagnostics or {})


class CorrespondenceValidationError(ValueError):
    pass
