from __future__ import annotations

from collections.abc import Iterable

from maskproxy.models.entities import Span


class InvalidSpanError(ValueError):
    """A span does not describe a valid range of the text it was issued for.

    Raised instead of clamping: a silently clamped span could leave part of a
    sensitive value in the outbound text.
    """


def validate_spans(spans: Iterable[Span], text_length: int) -> list[Span]:
    """Return spans ordered by start, failing fast on malformed or overlapping input."""
    ordered = sorted(spans, key=lambda item: (item.start, item.end))
    previous: Span | None = None
    for span in ordered:
        if span.start < 0 or span.start >= span.end:
            raise InvalidSpanError(f"invalid span range [{span.start}, {span.end}) for {span.entity_type}")
        if span.end > text_length:
            raise InvalidSpanError(
                f"span [{span.start}, {span.end}) for {span.entity_type} exceeds text length {text_length}"
            )
        if previous is not None and span.start < previous.end:
            raise InvalidSpanError(
                f"overlapping spans [{previous.start}, {previous.end}) and [{span.start}, {span.end}); "
                "resolve conflicts before masking"
            )
        previous = span
    return ordered
