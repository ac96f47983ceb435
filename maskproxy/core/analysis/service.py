from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from time import perf_counter
from typing import Any, Literal

from maskproxy.core.masking.conflicts import resolve_conflicts, resolve_overlaps
from maskproxy.core.masking.reversible import text_segments
from maskproxy.detectors.base import Detector
from maskproxy.models.entities import Span

logger = logging.getLogger(__name__)

DetectorFamily = Literal["pii", "secrets"]
SegmentSpans = list[list[list[Span]]]


class AnalysisService:
    """Runs the configured detectors over text segments and resolves their output.

    PII detections carry confidence scores and go through the score-aware
    resolver; secret matches carry none and go through the overlap sweep.
    """

    def __init__(
        self,
        *,
        pii_detector: Detector | None,
        secret_detector: Detector | None,
        language: str = "en",
        pii_roles: Sequence[str] = ("user", "assistant"),
    ) -> None:
        self._detectors: dict[DetectorFamily, Detector | None] = {
            "pii": pii_detector,
            "secrets": secret_detector,
        }
        self._language = language
        self._pii_roles = frozenset(pii_roles)

    def enabled(self, family: DetectorFamily) -> bool:
        return self._detectors[family] is not None

    @property
    def pii_detector(self) -> Detector | None:
        return self._detectors["pii"]

    async def _detect_one(self, detector: Detector, family: DetectorFamily, text: str) -> list[Span]:
        if not text:
            return []
        spans = await detector.detect(text, self._language)
        if family == "pii":
            return resolve_conflicts(spans)
        return resolve_overlaps(spans)

    async def detect_segments(self, segments: Sequence[str], family: DetectorFamily) -> list[list[Span]]:
        """Spans per segment, resolved. Segments are analyzed concurrently."""
        detector = self._detectors[family]
        if detector is None:
            return [[] for _ in segments]

        started_at = perf_counter()
        results = await asyncio.gather(*(self._detect_one(detector, family, segment) for segment in segments))
        logger.debug(
            "analysis family=%s detector=%s segments=%d spans=%d elapsed_ms=%.3f",
            family,
            detector.name,
            len(segments),
            sum(len(item) for item in results),
            (perf_counter() - started_at) * 1000.0,
        )
        return list(results)

    def _scans_role(self, family: DetectorFamily, role: Any) -> bool:
        return family == "secrets" or role in self._pii_roles

    async def detect_messages(self, messages: Sequence[dict[str, Any]], family: DetectorFamily) -> SegmentSpans:
        """Spans per message and per text segment, aligned with ``mask_messages``."""
        flat: list[str] = []
        owners: list[int] = []
        per_message: SegmentSpans = [[] for _ in messages]

        for msg_idx, message in enumerate(messages):
            segments = text_segments(message.get("content"))
            if not self._scans_role(family, message.get("role")):
                per_message[msg_idx] = [[] for _ in segments]
                continue
            flat.extend(segments)
            owners.extend([msg_idx] * len(segments))

        detected = await self.detect_segments(flat, family)
        for msg_idx, spans in zip(owners, detected, strict=True):
            per_message[msg_idx].append(spans)
        return per_message
