from __future__ import annotations

from core.errors import PipelinePhase

# Overall-progress sub-range owned by each phase.
PHASE_RANGES: dict[PipelinePhase, tuple[int, int]] = {
    PipelinePhase.IDLE: (0, 0),
    PipelinePhase.PARSING: (0, 15),
    PipelinePhase.SEARCHING: (15, 35),
    PipelinePhase.ANALYZING: (35, 75),
    PipelinePhase.GENERATING: (75, 90),
    PipelinePhase.EXPORTING: (90, 100),
    PipelinePhase.COMPLETED: (100, 100),
    PipelinePhase.CANCELLED: (0, 0),
    PipelinePhase.ERROR: (0, 0),
}


def fraction_percent(done: int, total: int) -> int:
    """round(done / total * 100), 100 when there is nothing to do."""
    if total <= 0:
        return 100
    return round(min(done, total) / total * 100)


def calculate_progress(phase: PipelinePhase, sub_progress: float = 0) -> int:
    """Map a 0-100 progress within `phase` onto the overall 0-100 scale."""
    start, end = PHASE_RANGES[phase]
    sub = max(0.0, min(100.0, float(sub_progress)))
    return round(start + (end - start) * (sub / 100))


class ProgressTracker:
    """Hands out overall progress values that never go backwards."""

    def __init__(self) -> None:
        self._last = 0

    @property
    def last(self) -> int:
        return self._last

    def advance(self, phase: PipelinePhase, sub_progress: float = 0) -> int:
        value = max(self._last, calculate_progress(phase, sub_progress))
        self._last = min(100, value)
        return self._last
