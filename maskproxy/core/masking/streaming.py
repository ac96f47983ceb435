"""Incremental unmasking for token-streamed responses.

A placeholder may arrive split across chunks (``"<EMAIL_ADD"`` then
``"RESS_1> there"``). Text is emitted as soon as it cannot be part of an
unfinished placeholder; only the tail starting at the last unterminated
opening delimiter is held back. Concatenating every emitted piece plus the
final flush equals unmasking the whole stream at once.

Chunks must be fed in arrival order.
"""

from __future__ import annotations

from maskproxy.core.masking.context import PlaceholderContext
from maskproxy.core.masking.placeholders import ANGLE_FORMAT, PlaceholderFormat
from maskproxy.core.masking.reversible import UnmaskOptions, unmask_with_count
from maskproxy.models.entities import StreamChunkResult

_DEFAULT_OPTIONS = UnmaskOptions()


def _pending_start(combined: str, fmt: PlaceholderFormat, max_pending: int | None) -> int:
    start = combined.rfind(fmt.open)
    if start != -1 and combined.find(fmt.close, start + len(fmt.open)) == -1:
        if max_pending is None or len(combined) - start < max_pending:
            return start
    return len(combined) - fmt.partial_open_suffix(combined)


def unmask_stream_chunk(
    buffer: str,
    chunk: str,
    context: PlaceholderContext,
    options: UnmaskOptions = _DEFAULT_OPTIONS,
    fmt: PlaceholderFormat = ANGLE_FORMAT,
    max_pending: int | None = None,
) -> StreamChunkResult:
    """Unmask everything in ``buffer + chunk`` that cannot be a partial placeholder.

    ``max_pending`` releases a held tail once it is at least that long; pass
    the context's longest token length, since a longer unterminated tail can
    never complete into a known placeholder.
    """
    combined = buffer + chunk
    cut = _pending_start(combined, fmt, max_pending)
    return StreamChunkResult(
        output=unmask_with_count(combined[:cut], context, options).text,
        remaining_buffer=combined[cut:],
    )


def flush_stream_buffer(
    buffer: str,
    context: PlaceholderContext,
    options: UnmaskOptions = _DEFAULT_OPTIONS,
) -> str:
    """Emit whatever is still held at end of stream, unterminated fragments included."""
    if not buffer:
        return ""
    return unmask_with_count(buffer, context, options).text


class StreamingUnmaskBuffer:
    """Stateful wrapper around :func:`unmask_stream_chunk` for one stream."""

    __slots__ = ("_context", "_options", "_fmt", "_bounded", "_buffer", "_replaced")

    def __init__(
        self,
        context: PlaceholderContext,
        options: UnmaskOptions = _DEFAULT_OPTIONS,
        fmt: PlaceholderFormat = ANGLE_FORMAT,
        *,
        bounded: bool = True,
        pending: str = "",
    ) -> None:
        self._context = context
        self._options = options
        self._fmt = fmt
        self._bounded = bounded
        self._buffer = pending
        self._replaced = 0

    @property
    def pending(self) -> str:
        return self._buffer

    @property
    def replaced(self) -> int:
        return self._replaced

    def feed(self, chunk: str) -> str:
        combined = self._buffer + chunk
        max_pending = self._context.max_token_length if self._bounded else None
        cut = _pending_start(combined, self._fmt, max_pending)
        self._buffer = combined[cut:]
        result = unmask_with_count(combined[:cut], self._context, self._options)
        self._replaced += result.replaced
        return result.text

    def flush(self) -> str:
        if not self._buffer:
            return ""
        result = unmask_with_count(self._buffer, self._context, self._options)
        self._buffer = ""
        self._replaced += result.replaced
        return result.text
