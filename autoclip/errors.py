from __future__ import annotations

from dataclasses import dataclass


class ClipperError(RuntimeError):
    """Base class for every error raised by the clipping pipeline."""


class InvalidInput(ClipperError, ValueError):
    """Request rejected before any network or subprocess work."""


class SignalUnavailable(ClipperError):
    """An advisory signal could not be obtained; callers fall back."""


class EngagementFetchError(SignalUnavailable):
    pass


class AnalyzerUnavailable(SignalUnavailable):
    pass


class ParseError(ClipperError):
    pass


class ExternalToolFailure(ClipperError):
    """An external tool (yt-dlp, ffmpeg, relay API) exited unsuccessfully."""

    def __init__(self, message: str, *, tool: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class ToolNotFound(ExternalToolFailure):
    pass


class AuthRequired(ExternalToolFailure):
    """The platform answered with a sign-in or bot challenge."""


class AttemptTimedOut(ExternalToolFailure):
    pass


@dataclass(frozen=True, slots=True)
class AttemptFailure:
    strategy_label: str
    kind: str
    detail: str


class AllStrategiesExhausted(ClipperError):
    def __init__(self, operation: str, failures: list[AttemptFailure]) -> None:
        labels = ", ".join(f"{failure.strategy_label} ({failure.kind})" for failure in failures) or "none configured"
        super().__init__(f"All retrieval strategies failed for {operation}: {labels}")
        self.operation = operation
        self.failures = failures

    @property
    def auth_blocked(self) -> bool:
        return bool(self.failures) and all(failure.kind == "auth" for failure in self.failures)


class PipelineFailed(ClipperError):
    """Terminal pipeline error carrying a message safe to show end users."""

    def __init__(self, stage: str, user_message: str) -> None:
        super().__init__(user_message)
        self.stage = stage
        self.user_message = user_message
