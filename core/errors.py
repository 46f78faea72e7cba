"""Error taxonomy shared by every pipeline stage.

Each failure carries a kind, the phase it originated in, a recoverability flag,
and free-form context. Stage code raises the phase-specific subclasses; the
orchestrator turns whatever escapes into a single `error` stream event.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class PipelinePhase(str, Enum):
    """Named stages of the pipeline state machine."""

    IDLE = "idle"
    PARSING = "parsing"
    SEARCHING = "searching"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    EXPORTING = "exporting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure kinds reported on the stream and used for retry classification."""

    PARSE_FAILED = "PARSE_FAILED"
    INVALID_PDF = "INVALID_PDF"
    EMPTY_CONTENT = "EMPTY_CONTENT"
    SEARCH_FAILED = "SEARCH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    EXPORT_FAILED = "EXPORT_FAILED"
    TIMEOUT = "TIMEOUT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNKNOWN = "UNKNOWN"
    # Collaborator-level kinds (job search provider / language model).
    AUTH_FAILED = "AUTH_FAILED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"


# kind -> (default recoverable, default phase); phase None means "whichever is active".
ERROR_DEFAULTS: dict[ErrorKind, tuple[bool, Optional[PipelinePhase]]] = {
    ErrorKind.PARSE_FAILED: (False, PipelinePhase.PARSING),
    ErrorKind.INVALID_PDF: (False, PipelinePhase.PARSING),
    ErrorKind.EMPTY_CONTENT: (False, PipelinePhase.PARSING),
    ErrorKind.SEARCH_FAILED: (True, PipelinePhase.SEARCHING),
    ErrorKind.RATE_LIMITED: (True, PipelinePhase.SEARCHING),
    ErrorKind.ANALYSIS_FAILED: (True, PipelinePhase.ANALYZING),
    ErrorKind.GENERATION_FAILED: (True, PipelinePhase.GENERATING),
    ErrorKind.EXPORT_FAILED: (True, PipelinePhase.EXPORTING),
    ErrorKind.TIMEOUT: (True, None),
    ErrorKind.VALIDATION_FAILED: (False, PipelinePhase.IDLE),
    ErrorKind.UNKNOWN: (False, None),
    ErrorKind.AUTH_FAILED: (False, None),
    ErrorKind.UPSTREAM_ERROR: (True, None),
    ErrorKind.MALFORMED_OUTPUT: (True, None),
}

PARSE_KINDS = frozenset({ErrorKind.PARSE_FAILED, ErrorKind.INVALID_PDF, ErrorKind.EMPTY_CONTENT})


def _utcnow_iso() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    )


class PipelineError(RuntimeError):
    """Base error for all pipeline failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        *,
        recoverable: bool | None = None,
        phase: PipelinePhase | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        default_recoverable, default_phase = ERROR_DEFAULTS[kind]
        self.message = message
        self.kind = kind
        self.recoverable = default_recoverable if recoverable is None else recoverable
        self.phase = phase or default_phase or PipelinePhase.ERROR
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = _utcnow_iso()

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def status(self) -> int | None:
        status = self.context.get("status")
        return int(status) if isinstance(status, (int, str)) and str(status).isdigit() else None

    def to_payload(self) -> dict[str, Any]:
        """Shape used by the `error` stream event."""
        return {
            "message": self.message,
            "code": self.code,
            "phase": self.phase.value,
            "recoverable": self.recoverable,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            **self.to_payload(),
            "timestamp": self.timestamp,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, phase={self.phase.value}, message={self.message!r})"


class ParseError(PipelineError):
    """Resume extraction / profile parsing failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.PARSE_FAILED,
        *,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, kind, recoverable=recoverable, phase=PipelinePhase.PARSING, context=context
        )


class SearchError(PipelineError):
    """Job search provider failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.SEARCH_FAILED,
        *,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, kind, recoverable=recoverable, phase=PipelinePhase.SEARCHING, context=context
        )


class AnalysisError(PipelineError):
    """Per-job fit analysis failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.ANALYSIS_FAILED,
        *,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, kind, recoverable=recoverable, phase=PipelinePhase.ANALYZING, context=context
        )


class GenerationError(PipelineError):
    """Cover letter generation failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.GENERATION_FAILED,
        *,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, kind, recoverable=recoverable, phase=PipelinePhase.GENERATING, context=context
        )


class ValidationFailed(PipelineError):
    """Malformed pipeline request."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            ErrorKind.VALIDATION_FAILED,
            recoverable=False,
            phase=PipelinePhase.IDLE,
            context=context,
        )


class MalformedOutputError(PipelineError):
    """Model output could not be parsed or failed schema validation."""

    def __init__(
        self,
        message: str,
        *,
        phase: PipelinePhase | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, ErrorKind.MALFORMED_OUTPUT, recoverable=True, phase=phase, context=context
        )


class UpstreamError(PipelineError):
    """Failure reported by an external provider (HTTP error, timeout, throttling)."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UPSTREAM_ERROR,
        *,
        status: int | None = None,
        recoverable: bool | None = None,
        phase: PipelinePhase | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        if status is not None:
            ctx["status"] = status
        if recoverable is None and status is not None and kind is ErrorKind.UPSTREAM_ERROR:
            recoverable = status >= 500
        super().__init__(message, kind, recoverable=recoverable, phase=phase, context=ctx)


class PipelineCancelled(PipelineError):
    """Raised inside the pipeline once the cancel signal has been observed."""

    def __init__(self, reason: str = "cancelled", *, phase: PipelinePhase | None = None) -> None:
        super().__init__(reason, ErrorKind.UNKNOWN, recoverable=False, phase=phase)


def wrap_error(
    error: BaseException,
    phase: PipelinePhase,
    default_kind: ErrorKind = ErrorKind.UNKNOWN,
) -> PipelineError:
    """Return `error` unchanged if already typed, else wrap it non-recoverably."""
    if isinstance(error, PipelineError):
        return error
    message = str(error) or type(error).__name__
    return PipelineError(
        message,
        default_kind,
        recoverable=False,
        phase=phase,
        context={"original_error": type(error).__name__},
    )
