from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from maskproxy.core.masking.context import PlaceholderContext


@dataclass(slots=True, frozen=True)
class Span:
    """A typed half-open ``[start, end)`` range flagged as sensitive."""

    entity_type: str
    start: int
    end: int
    score: float | None = None

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: Span) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: Span) -> bool:
        return self.start <= other.start and other.end <= self.end

    def shifted(self, offset: int) -> Span:
        return replace(self, start=self.start + offset, end=self.end + offset)


@dataclass(slots=True, frozen=True)
class TextWindow:
    text: str
    start: int

    @property
    def end(self) -> int:
        return self.start + len(self.text)


@dataclass(slots=True)
class MaskingResult:
    masked: str
    context: PlaceholderContext


@dataclass(slots=True)
class UnmaskingResult:
    text: str
    replaced: int


@dataclass(slots=True)
class StreamChunkResult:
    output: str
    remaining_buffer: str


@dataclass(slots=True)
class MaskedMessages:
    masked: list[dict[str, Any]]
    context: PlaceholderContext


@dataclass(slots=True)
class DetectionDiagnostics:
    elapsed_ms: float
    windows: int = 1
    failed_windows: list[int] = field(default_factory=list)
    detector_errors: dict[str, str] = field(default_factory=dict)
