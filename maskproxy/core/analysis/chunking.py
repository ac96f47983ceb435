from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from time import perf_counter

from maskproxy.core.masking.spans import InvalidSpanError
from maskproxy.models.entities import DetectionDiagnostics, Span, TextWindow

logger = logging.getLogger(__name__)

WindowDetector = Callable[[str], Awaitable[list[Span]]]


class DetectionUnavailableError(RuntimeError):
    """Detection could not complete; callers must block or degrade explicitly."""

    def __init__(self, message: str, *, detector_errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.detector_errors = dict(detector_errors or {})


@dataclass(slots=True, frozen=True)
class WindowingConfig:
    max_chars: int = 4000
    overlap_chars: int = 200

    def normalized(self) -> WindowingConfig:
        max_chars = max(2, int(self.max_chars))
        overlap_chars = max(0, min(int(self.overlap_chars), max_chars - 1))
        return WindowingConfig(max_chars=max_chars, overlap_chars=overlap_chars)


@dataclass(slots=True)
class ChunkedDetection:
    spans: list[Span]
    diagnostics: DetectionDiagnostics


def build_windows(text: str, config: WindowingConfig) -> list[TextWindow]:
    cfg = config.normalized()
    if len(text) <= cfg.max_chars:
        return [TextWindow(text=text, start=0)]

    stride = cfg.max_chars - cfg.overlap_chars
    windows: list[TextWindow] = []
    start = 0
    while start < len(text):
        end = min(start + cfg.max_chars, len(text))
        windows.append(TextWindow(text=text[start:end], start=start))
        if end == len(text):
            break
        start += stride
    return windows


def shift_spans(spans: Iterable[Span], window: TextWindow) -> list[Span]:
    """Move window-local spans into the coordinates of the full text."""
    shifted: list[Span] = []
    for span in spans:
        if span.start < 0 or span.start >= span.end or span.end > len(window.text):
            raise InvalidSpanError(
                f"detector returned span [{span.start}, {span.end}) outside window of length {len(window.text)}"
            )
        shifted.append(span.shifted(window.start))
    return shifted


def _score(span: Span) -> float:
    return 0.0 if span.score is None else float(span.score)


def dedupe_window_spans(spans: Iterable[Span]) -> list[Span]:
    """Collapse same-type detections repeated across window overlaps."""
    ordered = sorted(spans, key=lambda item: item.start)
    if not ordered:
        return []

    unique: list[Span] = []
    current = ordered[0]
    for candidate in ordered[1:]:
        if candidate.start < current.end and candidate.entity_type == current.entity_type:
            if candidate.length > current.length:
                current = candidate
            elif candidate.length == current.length and _score(candidate) > _score(current):
                current = candidate
            continue
        unique.append(current)
        current = candidate
    unique.append(current)
    return unique


async def detect_chunked(
    text: str,
    detect: WindowDetector,
    config: WindowingConfig,
    *,
    allow_partial: bool = False,
    detector_name: str = "detector",
) -> ChunkedDetection:
    """Run ``detect`` over overlapping windows concurrently and merge the results.

    Results are merged in window order whatever the completion order. A failed
    window raises :class:`DetectionUnavailableError` unless ``allow_partial``
    is set, in which case it is reported in the diagnostics.
    """
    started_at = perf_counter()
    windows = build_windows(text, config)
    results = await asyncio.gather(*(detect(window.text) for window in windows), return_exceptions=True)

    merged: list[Span] = []
    failed: list[int] = []
    errors: dict[str, str] = {}
    for idx, (window, result) in enumerate(zip(windows, results, strict=True)):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            failed.append(idx)
            errors[f"{detector_name}[{idx}]"] = f"{type(result).__name__}: {result}"
            continue
        merged.extend(shift_spans(result, window))

    if failed and not allow_partial:
        raise DetectionUnavailableError(
            f"{detector_name}: {len(failed)} of {len(windows)} windows failed",
            detector_errors=errors,
        )
    if failed:
        logger.warning(
            "partial detection detector=%s failed_windows=%s total_windows=%d",
            detector_name,
            failed,
            len(windows),
        )

    spans = dedupe_window_spans(merged) if len(windows) > 1 else merged
    return ChunkedDetection(
        spans=spans,
        diagnostics=DetectionDiagnostics(
            elapsed_ms=round((perf_counter() - started_at) * 1000.0, 3),
            windows=len(windows),
            failed_windows=failed,
            detector_errors=errors,
        ),
    )
