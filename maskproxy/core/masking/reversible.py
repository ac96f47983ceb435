from __future__ import annotations

import re
from collections.abc import Sequence
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from maskproxy.core.masking.context import PlaceholderContext
from maskproxy.core.masking.placeholders import ANGLE_FORMAT, PlaceholderFormat
from maskproxy.core.masking.spans import validate_spans
from maskproxy.models.entities import MaskedMessages, MaskingResult, Span, UnmaskingResult


@dataclass(slots=True, frozen=True)
class UnmaskOptions:
    show_markers: bool = False
    marker_text: str = "[protected]"


_DEFAULT_OPTIONS = UnmaskOptions()


def mask(
    text: str,
    spans: Sequence[Span],
    context: PlaceholderContext | None = None,
    fmt: PlaceholderFormat = ANGLE_FORMAT,
) -> MaskingResult:
    """Replace each span of ``text`` with a typed placeholder.

    Placeholders are numbered in reading order; an original value already
    known to ``context`` reuses its placeholder. ``spans`` must be disjoint
    (run a resolver first) and lie within ``text``.
    """
    ctx = context if context is not None else PlaceholderContext()
    if not spans:
        return MaskingResult(masked=text, context=ctx)

    ordered = validate_spans(spans, len(text))
    placeholders = [ctx.placeholder_for(span.entity_type, text[span.start : span.end], fmt) for span in ordered]

    pieces: list[str] = []
    cursor = 0
    for span, placeholder in zip(ordered, placeholders, strict=True):
        pieces.append(text[cursor : span.start])
        pieces.append(placeholder)
        cursor = span.end
    pieces.append(text[cursor:])
    return MaskingResult(masked="".join(pieces), context=ctx)


def mask_segments(
    segments: Sequence[str],
    spans_per_segment: Sequence[Sequence[Span]],
    context: PlaceholderContext | None = None,
    fmt: PlaceholderFormat = ANGLE_FORMAT,
) -> tuple[list[str], PlaceholderContext]:
    """Mask independently-offset segments in order, sharing one context."""
    ctx = context if context is not None else PlaceholderContext()
    masked: list[str] = []
    for idx, segment in enumerate(segments):
        spans = spans_per_segment[idx] if idx < len(spans_per_segment) else ()
        masked.append(mask(segment, spans, ctx, fmt).masked)
    return masked, ctx


def _is_text_part(part: Any) -> bool:
    return isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)


def text_segments(content: Any) -> list[str]:
    """Text-bearing segments of a chat message ``content`` in document order.

    A string is one segment; for a parts list every ``text`` part is a
    segment (empty ones included, so indexes line up with the parts).
    """
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        return [part["text"] for part in content if _is_text_part(part)]
    return []


def mask_messages(
    messages: Sequence[dict[str, Any]],
    spans_per_message: Sequence[Sequence[Sequence[Span]]],
    fmt: PlaceholderFormat = ANGLE_FORMAT,
    context: PlaceholderContext | None = None,
) -> MaskedMessages:
    """Mask chat messages, keeping roles, non-text parts and extra keys intact."""
    ctx = context if context is not None else PlaceholderContext()
    masked_messages: list[dict[str, Any]] = []

    for msg_idx, message in enumerate(messages):
        per_segment = spans_per_message[msg_idx] if msg_idx < len(spans_per_message) else ()
        content = message.get("content")

        if isinstance(content, str):
            spans = per_segment[0] if per_segment else ()
            masked_messages.append({**message, "content": mask(content, spans, ctx, fmt).masked})
            continue

        if not isinstance(content, list):
            masked_messages.append(deepcopy(message))
            continue

        segment_idx = 0
        parts: list[Any] = []
        for part in content:
            if not _is_text_part(part):
                parts.append(deepcopy(part))
                continue
            spans = per_segment[segment_idx] if segment_idx < len(per_segment) else ()
            segment_idx += 1
            parts.append({**part, "text": mask(part["text"], spans, ctx, fmt).masked})
        masked_messages.append({**message, "content": parts})

    return MaskedMessages(masked=masked_messages, context=ctx)


def _token_pattern(context: PlaceholderContext) -> re.Pattern[str] | None:
    if context.is_empty:
        return None
    # Longest first so no token is consumed as a prefix of a longer one.
    tokens = sorted(context.mapping, key=len, reverse=True)
    return re.compile("|".join(re.escape(token) for token in tokens))


def unmask_with_count(
    text: str,
    context: PlaceholderContext,
    options: UnmaskOptions = _DEFAULT_OPTIONS,
) -> UnmaskingResult:
    pattern = _token_pattern(context)
    if pattern is None or not text:
        return UnmaskingResult(text=text, replaced=0)

    prefix = options.marker_text if options.show_markers else ""
    restored, replaced = pattern.subn(lambda match: prefix + context.mapping[match.group(0)], text)
    return UnmaskingResult(text=restored, replaced=replaced)


def unmask(text: str, context: PlaceholderContext, options: UnmaskOptions = _DEFAULT_OPTIONS) -> str:
    """Restore every known placeholder in ``text``; unknown tokens are left as-is."""
    return unmask_with_count(text, context, options).text


def _unmask_content(content: Any, context: PlaceholderContext, options: UnmaskOptions) -> Any:
    if isinstance(content, str):
        return unmask(content, context, options)
    if isinstance(content, list):
        return [
            {**part, "text": unmask(part["text"], context, options)} if _is_text_part(part) else part
            for part in content
        ]
    return content


def unmask_response(
    response: dict[str, Any],
    context: PlaceholderContext,
    options: UnmaskOptions = _DEFAULT_OPTIONS,
) -> dict[str, Any]:
    """Restore placeholders in every choice of a chat completion response."""
    restored = deepcopy(response)
    choices = restored.get("choices")
    if not isinstance(choices, list):
        return restored
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if isinstance(message, dict) and "content" in message:
            message["content"] = _unmask_content(message["content"], context, options)
    return restored


class ReversibleMaskingEngine:
    """Masking and unmasking bound to one placeholder format and marker setting."""

    def __init__(self, fmt: PlaceholderFormat = ANGLE_FORMAT, options: UnmaskOptions = _DEFAULT_OPTIONS) -> None:
        self._fmt = fmt
        self._options = options

    @property
    def fmt(self) -> PlaceholderFormat:
        return self._fmt

    @property
    def options(self) -> UnmaskOptions:
        return self._options

    def mask(self, text: str, spans: Sequence[Span], context: PlaceholderContext | None = None) -> MaskingResult:
        return mask(text, spans, context, self._fmt)

    def mask_segments(
        self,
        segments: Sequence[str],
        spans_per_segment: Sequence[Sequence[Span]],
        context: PlaceholderContext | None = None,
    ) -> tuple[list[str], PlaceholderContext]:
        return mask_segments(segments, spans_per_segment, context, self._fmt)

    def mask_messages(
        self,
        messages: Sequence[dict[str, Any]],
        spans_per_message: Sequence[Sequence[Sequence[Span]]],
        context: PlaceholderContext | None = None,
    ) -> MaskedMessages:
        return mask_messages(messages, spans_per_message, self._fmt, context)

    def unmask(self, text: str, context: PlaceholderContext) -> UnmaskingResult:
        return unmask_with_count(text, context, self._options)

    def unmask_response(self, response: dict[str, Any], context: PlaceholderContext) -> dict[str, Any]:
        return unmask_response(response, context, self._options)
