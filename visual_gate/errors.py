"""Error taxonomy for the visual gate.

Per-screen errors (PolicyViolation, CaptureFailure, DimensionMismatch) are
converted into FAIL results by the runner. Run-level errors (PolicyLoadError,
ManifestError) abort the run. EvidenceError only aborts packaging.
"""

from __future__ import annotations

from typing import Any, Optional


class GateError(Exception):
    """Base class for all visual gate errors."""


class PolicyViolation(GateError):
    def __init__(self, screen_name: str, field: str, reason: str):
        self.screen_name = screen_name
        self.field = field
        self.reason = reason
        super().__init__(f'Screen "{screen_name}" {field} override rejected: {reason}')


class PolicyLoadError(GateError):
    pass


class CaptureFailure(GateError):
    def __init__(self, message: str, debug_info: Optional[dict[str, Any]] = None):
        self.debug_info = debug_info
        super().__init__(message)


class DimensionMismatch(GateError):
    def __init__(self, expected_size: tuple[int, int], actual_size: tuple[int, int]):
        self.expected_size = expected_size
        self.actual_size = actual_size
        super().__init__(
            "Image dimensions mismatch: "
            f"expected({expected_size[0]}x{expected_size[1]}) vs "
            f"actual({actual_size[0]}x{actual_size[1]})"
        )


class ManifestError(GateError):
    pass


class EvidenceError(GateError):
    pass
