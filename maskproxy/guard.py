from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from maskproxy.config import ProxyConfig
from maskproxy.core.analysis.chunking import DetectionUnavailableError
from maskproxy.core.analysis.service import AnalysisService
from maskproxy.core.masking.context import PlaceholderCollisionError, PlaceholderContext
from maskproxy.core.masking.placeholders import SECRET_FORMAT
from maskproxy.core.masking.reversible import ReversibleMaskingEngine
from maskproxy.core.masking.streaming import StreamingUnmaskBuffer
from maskproxy.models.entities import Span
from maskproxy.storage.redis_store import RedisMappingStore

logger = logging.getLogger(__name__)

# Secrets are restored verbatim, without visual markers.
SECRET_ENGINE = ReversibleMaskingEngine(SECRET_FORMAT)


class GuardError(RuntimeError):
    pass


class GuardBlockedError(GuardError):
    def __init__(self, message: str, secret_types: list[str]) -> None:
        super().__init__(message)
        self.secret_types = list(secret_types)


class GuardNotFoundError(GuardError):
    pass


class GuardContextConflictError(GuardError):
    pass


class GuardDetectionFailedError(GuardError):
    def __init__(self, message: str, *, detector_errors: dict[str, str]) -> None:
        super().__init__(message)
        self.detector_errors = dict(detector_errors)


@dataclass(slots=True)
class ProtectionContexts:
    """PII and secret ledgers are kept apart; each uses its own placeholder format."""

    pii: PlaceholderContext = field(default_factory=PlaceholderContext)
    secrets: PlaceholderContext = field(default_factory=PlaceholderContext)

    @property
    def is_empty(self) -> bool:
        return self.pii.is_empty and self.secrets.is_empty

    @property
    def placeholders_count(self) -> int:
        return len(self.pii) + len(self.secrets)

    def to_payload(self) -> dict[str, Any]:
        return {"pii": self.pii.to_payload(), "secrets": self.secrets.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProtectionContexts:
        return cls(
            pii=PlaceholderContext.from_payload(payload.get("pii", {})),
            secrets=PlaceholderContext.from_payload(payload.get("secrets", {})),
        )


@dataclass(slots=True)
class ProtectionSummary:
    pii_count: int = 0
    secret_count: int = 0
    pii_types: list[str] = field(default_factory=list)
    secret_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProtectedMessages:
    messages: list[dict[str, Any]]
    contexts: ProtectionContexts
    summary: ProtectionSummary


@dataclass(slots=True)
class TextInput:
    id: str
    text: str


@dataclass(slots=True)
class ItemMaskResult:
    id: str
    text: str


@dataclass(slots=True)
class MaskOperationResult:
    session_id: str
    placeholders_count: int
    ttl_seconds: int
    summary: ProtectionSummary
    items: list[ItemMaskResult]


@dataclass(slots=True)
class ItemUnmaskResult:
    id: str
    text: str
    replacements: int


@dataclass(slots=True)
class UnmaskOperationResult:
    session_id: str
    context_found: bool
    replacements: int
    context_deleted: bool
    items: list[ItemUnmaskResult]


@dataclass(slots=True)
class StreamUnmaskOperationResult:
    session_id: str
    stream_id: str
    context_found: bool
    output: str
    replacements: int
    buffered_chars: int
    final: bool
    context_deleted: bool


def _flatten(spans: Sequence[Sequence[Span]]) -> list[Span]:
    return [span for segment in spans for span in segment]


class StreamRestorer:
    """Restores one output stream: PII placeholders first, then redacted secrets.

    The two buffers are chained so a secret token revealed by PII restoration
    is still caught. ``state()`` round-trips through ``pending``.
    """

    def __init__(
        self,
        contexts: ProtectionContexts,
        pii_engine: ReversibleMaskingEngine,
        secret_engine: ReversibleMaskingEngine = SECRET_ENGINE,
        *,
        bounded: bool = True,
        pending: dict[str, str] | None = None,
    ) -> None:
        state = pending or {}
        self._pii = StreamingUnmaskBuffer(
            contexts.pii,
            pii_engine.options,
            pii_engine.fmt,
            bounded=bounded,
            pending=str(state.get("pii", "")),
        )
        self._secrets = StreamingUnmaskBuffer(
            contexts.secrets,
            secret_engine.options,
            secret_engine.fmt,
            bounded=bounded,
            pending=str(state.get("secrets", "")),
        )

    @property
    def replaced(self) -> int:
        return self._pii.replaced + self._secrets.replaced

    @property
    def buffered_chars(self) -> int:
        return len(self._pii.pending) + len(self._secrets.pending)

    def state(self) -> dict[str, str]:
        return {"pii": self._pii.pending, "secrets": self._secrets.pending}

    def feed(self, chunk: str) -> str:
        return self._secrets.feed(self._pii.feed(chunk))

    def flush(self) -> str:
        released = self._secrets.feed(self._pii.flush())
        return released + self._secrets.flush()


class GuardService:
    def __init__(
        self,
        config: ProxyConfig,
        analysis_service: AnalysisService,
        mapping_store: RedisMappingStore | None = None,
    ) -> None:
        self._config = config
        self._analysis = analysis_service
        self._mapping_store = mapping_store
        self._pii_engine = ReversibleMaskingEngine(
            config.masking.placeholder_format,
            config.masking.unmask_options,
        )

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def _secrets_active(self) -> bool:
        return self._config.secrets_detection.action != "passthrough" and self._analysis.enabled("secrets")

    def _store(self) -> RedisMappingStore:
        if self._mapping_store is None:
            raise GuardError("session storage is not configured")
        return self._mapping_store

    def _check_secrets(self, spans: list[Span], summary: ProtectionSummary) -> None:
        summary.secret_count = len(spans)
        summary.secret_types = sorted({span.entity_type for span in spans})
        if spans and self._config.secrets_detection.action == "block":
            logger.info("request blocked: secrets detected types=%s", ",".join(summary.secret_types))
            raise GuardBlockedError("blocked: secrets detected in request", secret_types=summary.secret_types)

    @staticmethod
    def _record_pii(spans: list[Span], summary: ProtectionSummary) -> None:
        summary.pii_count = len(spans)
        summary.pii_types = sorted({span.entity_type for span in spans})

    async def protect_messages(
        self,
        messages: Sequence[dict[str, Any]],
        contexts: ProtectionContexts | None = None,
    ) -> ProtectedMessages:
        """Redact secrets, then mask PII in what remains.

        Detection failures are raised as :class:`GuardDetectionFailedError`;
        nothing is forwarded unscanned.
        """
        ctx = contexts if contexts is not None else ProtectionContexts()
        summary = ProtectionSummary()
        working = [dict(message) for message in messages]

        try:
            if self._secrets_active:
                secret_spans = await self._analysis.detect_messages(working, "secrets")
                self._check_secrets([span for spans in secret_spans for span in _flatten(spans)], summary)
                if summary.secret_count:
                    working = SECRET_ENGINE.mask_messages(working, secret_spans, ctx.secrets).masked

            if self._analysis.enabled("pii"):
                pii_spans = await self._analysis.detect_messages(working, "pii")
                self._record_pii([span for spans in pii_spans for span in _flatten(spans)], summary)
                if summary.pii_count:
                    working = self._pii_engine.mask_messages(working, pii_spans, ctx.pii).masked
        except DetectionUnavailableError as exc:
            logger.warning("detection unavailable: %s", exc)
            raise GuardDetectionFailedError(str(exc), detector_errors=exc.detector_errors) from exc
        except PlaceholderCollisionError as exc:
            logger.warning("placeholder ledger is inconsistent: %s", exc)
            raise GuardContextConflictError(str(exc)) from exc

        return ProtectedMessages(messages=working, contexts=ctx, summary=summary)

    async def protect_texts(
        self,
        texts: Sequence[str],
        contexts: ProtectionContexts,
    ) -> tuple[list[str], ProtectionSummary]:
        summary = ProtectionSummary()
        working = list(texts)

        try:
            if self._secrets_active:
                secret_spans = await self._analysis.detect_segments(working, "secrets")
                self._check_secrets(_flatten(secret_spans), summary)
                if summary.secret_count:
                    working, _ = SECRET_ENGINE.mask_segments(working, secret_spans, contexts.secrets)

            if self._analysis.enabled("pii"):
                pii_spans = await self._analysis.detect_segments(working, "pii")
                self._record_pii(_flatten(pii_spans), summary)
                if summary.pii_count:
                    working, _ = self._pii_engine.mask_segments(working, pii_spans, contexts.pii)
        except DetectionUnavailableError as exc:
            logger.warning("detection unavailable: %s", exc)
            raise GuardDetectionFailedError(str(exc), detector_errors=exc.detector_errors) from exc
        except PlaceholderCollisionError as exc:
            logger.warning("placeholder ledger is inconsistent: %s", exc)
            raise GuardContextConflictError(str(exc)) from exc

        return working, summary

    def restore_text(self, text: str, contexts: ProtectionContexts) -> tuple[str, int]:
        pii = self._pii_engine.unmask(text, contexts.pii)
        secrets = SECRET_ENGINE.unmask(pii.text, contexts.secrets)
        return secrets.text, pii.replaced + secrets.replaced

    def restore_response(self, response: dict[str, Any], contexts: ProtectionContexts) -> dict[str, Any]:
        restored = self._pii_engine.unmask_response(response, contexts.pii)
        return SECRET_ENGINE.unmask_response(restored, contexts.secrets)

    def stream_restorer(
        self,
        contexts: ProtectionContexts,
        pending: dict[str, str] | None = None,
    ) -> StreamRestorer:
        return StreamRestorer(
            contexts,
            self._pii_engine,
            bounded=self._config.masking.stream_bounded_holdback,
            pending=pending,
        )

    async def _load_contexts(self, session_id: str) -> ProtectionContexts | None:
        stored = await self._store().load_session(session_id)
        if stored is None:
            return None
        return ProtectionContexts.from_payload(stored.contexts)

    def _allow_missing(self, allow_missing_context: bool | None) -> bool:
        if allow_missing_context is None:
            return self._config.session.allow_missing_context
        return allow_missing_context

    async def mask_items(
        self,
        session_id: str,
        items: list[TextInput],
        ttl_seconds: int | None = None,
    ) -> MaskOperationResult:
        """Mask items against the session ledger, so numbering continues across turns."""
        store = self._store()
        effective_ttl = int(ttl_seconds or self._config.session.ttl_seconds)
        contexts = await self._load_contexts(session_id) or ProtectionContexts()

        masked_texts, summary = await self.protect_texts([item.text for item in items], contexts)

        await store.save_session(session_id, contexts.to_payload(), ttl_seconds=effective_ttl)
        return MaskOperationResult(
            session_id=session_id,
            placeholders_count=contexts.placeholders_count,
            ttl_seconds=effective_ttl,
            summary=summary,
            items=[ItemMaskResult(id=item.id, text=text) for item, text in zip(items, masked_texts, strict=True)],
        )

    async def unmask_items(
        self,
        session_id: str,
        items: list[TextInput],
        delete_context: bool = False,
        allow_missing_context: bool | None = None,
    ) -> UnmaskOperationResult:
        contexts = await self._load_contexts(session_id)
        if contexts is None:
            if not self._allow_missing(allow_missing_context):
                raise GuardNotFoundError(f"session context not found: {session_id}")
            return UnmaskOperationResult(
                session_id=session_id,
                context_found=False,
                replacements=0,
                context_deleted=False,
                items=[ItemUnmaskResult(id=item.id, text=item.text, replacements=0) for item in items],
            )

        replacements_total = 0
        output_items: list[ItemUnmaskResult] = []
        for item in items:
            text, replaced = self.restore_text(item.text, contexts)
            replacements_total += replaced
            output_items.append(ItemUnmaskResult(id=item.id, text=text, replacements=replaced))

        if delete_context:
            await self._store().delete_session(session_id)

        return UnmaskOperationResult(
            session_id=session_id,
            context_found=True,
            replacements=replacements_total,
            context_deleted=delete_context,
            items=output_items,
        )

    async def unmask_stream_chunk(
        self,
        session_id: str,
        stream_id: str,
        chunk: str,
        final: bool,
        delete_context: bool = False,
        allow_missing_context: bool | None = None,
    ) -> StreamUnmaskOperationResult:
        if delete_context and not final:
            raise GuardError("delete_context=true requires final=true")

        store = self._store()
        stored = await store.load_session(session_id)
        if stored is None:
            if not self._allow_missing(allow_missing_context):
                raise GuardNotFoundError(f"session context not found: {session_id}")
            return StreamUnmaskOperationResult(
                session_id=session_id,
                stream_id=stream_id,
                context_found=False,
                output=chunk,
                replacements=0,
                buffered_chars=0,
                final=final,
                context_deleted=False,
            )

        contexts = ProtectionContexts.from_payload(stored.contexts)
        ttl_seconds = stored.ttl_seconds or self._config.session.ttl_seconds
        pending = await store.load_stream_pending(session_id, stream_id)
        restorer = self.stream_restorer(contexts, pending=pending)

        output = restorer.feed(chunk)
        if final:
            output += restorer.flush()
            await store.delete_stream(session_id, stream_id)
            if delete_context:
                await store.delete_session(session_id)
        else:
            await store.save_stream_pending(session_id, stream_id, restorer.state(), ttl_seconds=ttl_seconds)

        return StreamUnmaskOperationResult(
            session_id=session_id,
            stream_id=stream_id,
            context_found=True,
            output=output,
            replacements=restorer.replaced,
            buffered_chars=restorer.buffered_chars,
            final=final,
            context_deleted=delete_context,
        )

    async def finalize_session(self, session_id: str) -> bool:
        return await self._store().delete_session(session_id)
