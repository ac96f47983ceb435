from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from maskproxy.core.analysis.chunking import (
    ChunkedDetection,
    DetectionUnavailableError,
    WindowingConfig,
    detect_chunked,
)
from maskproxy.detectors.base import Detector
from maskproxy.models.entities import DetectionDiagnostics, Span

logger = logging.getLogger(__name__)


class PresidioHttpDetector(Detector):
    """Entity detector backed by a Presidio analyzer service (``POST /analyze``).

    Oversized texts are split into overlapping windows that are analyzed
    concurrently. Transport and HTTP errors surface as
    :class:`DetectionUnavailableError`; they are never turned into an empty
    result.
    """

    def __init__(
        self,
        base_url: str,
        *,
        entities: list[str] | None = None,
        score_threshold: float = 0.7,
        windowing: WindowingConfig | None = None,
        allow_partial: bool = False,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
        name: str = "presidio",
    ) -> None:
        super().__init__(name)
        self._base_url = base_url.rstrip("/")
        self._entities = list(entities) if entities else None
        self._score_threshold = float(score_threshold)
        self._windowing = windowing or WindowingConfig()
        self._allow_partial = allow_partial
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def _analyze(self, text: str, language: str) -> list[Span]:
        payload: dict[str, Any] = {
            "text": text,
            "language": language,
            "score_threshold": self._score_threshold,
        }
        if self._entities:
            payload["entities"] = self._entities

        try:
            response = await self._client.post(f"{self._base_url}/analyze", json=payload)
        except httpx.TimeoutException as exc:
            raise DetectionUnavailableError(
                f"presidio timeout at {self._base_url}", detector_errors={self.name: str(exc)}
            ) from exc
        except httpx.RequestError as exc:
            raise DetectionUnavailableError(
                f"failed to connect to presidio at {self._base_url}", detector_errors={self.name: str(exc)}
            ) from exc

        if response.status_code != 200:
            raise DetectionUnavailableError(
                f"presidio error {response.status_code}",
                detector_errors={self.name: response.text[:500]},
            )

        return [
            Span(
                entity_type=str(item["entity_type"]),
                start=int(item["start"]),
                end=int(item["end"]),
                score=float(item["score"]) if item.get("score") is not None else None,
            )
            for item in response.json()
        ]

    async def detect_with_diagnostics(self, text: str, language: str) -> ChunkedDetection:
        if not text:
            return ChunkedDetection(spans=[], diagnostics=DetectionDiagnostics(elapsed_ms=0.0, windows=0))
        return await detect_chunked(
            text,
            lambda window_text: self._analyze(window_text, language),
            self._windowing,
            allow_partial=self._allow_partial,
            detector_name=self.name,
        )

    async def detect(self, text: str, language: str) -> list[Span]:
        return (await self.detect_with_diagnostics(text, language)).spans

    async def health(self) -> bool:
        try:
            response = await self._client.get(f"{self._base_url}/health", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def wait_until_ready(self, max_retries: int = 30, delay_seconds: float = 1.0) -> bool:
        for attempt in range(1, max_retries + 1):
            if await self.health():
                return True
            if attempt == 1 or attempt % 5 == 0:
                logger.info("waiting for presidio at %s (attempt %d/%d)", self._base_url, attempt, max_retries)
            if attempt < max_retries:
                await asyncio.sleep(delay_seconds)
        return False
