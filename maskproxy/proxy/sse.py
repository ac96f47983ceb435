from __future__ import annotations

import logging
from collections.abc import Callable
from copy import deepcopy
from typing import Any

import orjson

from maskproxy.guard import StreamRestorer

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE = "[DONE]"


class SSEUnmasker:
    """Rewrites an OpenAI chat-completions SSE stream line by line.

    Each choice index gets its own restorer. A choice's held tail is appended
    to its ``finish_reason`` chunk; anything still held when the stream ends
    is emitted as a synthetic chunk before ``[DONE]``.
    """

    def __init__(self, restorer_factory: Callable[[], StreamRestorer]) -> None:
        self._factory = restorer_factory
        self._restorers: dict[int, StreamRestorer] = {}
        self._template: dict[str, Any] | None = None
        self._finished = False

    @property
    def replaced(self) -> int:
        return sum(restorer.replaced for restorer in self._restorers.values())

    def _restorer(self, index: int) -> StreamRestorer:
        restorer = self._restorers.get(index)
        if restorer is None:
            restorer = self._factory()
            self._restorers[index] = restorer
        return restorer

    def _synthetic_chunk(self, index: int, content: str) -> str:
        template = self._template or {"id": "chatcmpl-maskproxy", "object": "chat.completion.chunk"}
        synthetic = deepcopy(template)
        synthetic.pop("usage", None)
        synthetic["choices"] = [{"index": index, "delta": {"content": content}, "finish_reason": None}]
        return f"{_DATA_PREFIX} {orjson.dumps(synthetic).decode()}\n\n"

    def _rewrite_chunk(self, chunk: dict[str, Any]) -> None:
        choices = chunk.get("choices")
        if not isinstance(choices, list):
            return
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            index = int(choice.get("index", 0))
            restorer = self._restorer(index)
            delta = choice.get("delta")
            if not isinstance(delta, dict):
                delta = {}
            content = delta.get("content")
            if isinstance(content, str):
                delta["content"] = restorer.feed(content)
            if choice.get("finish_reason") is not None:
                tail = restorer.flush()
                if tail:
                    delta["content"] = (delta.get("content") or "") + tail
                    choice["delta"] = delta

    def feed_line(self, line: str) -> list[str]:
        """Transform one upstream line; returns the text to send downstream."""
        if not line.startswith(_DATA_PREFIX):
            return [f"{line}\n"]

        data = line[len(_DATA_PREFIX) :].strip()
        if data == _DONE:
            return [*self.finish(), f"{line}\n"]

        try:
            chunk = orjson.loads(data)
        except orjson.JSONDecodeError:
            logger.warning("forwarding non-JSON SSE data line unchanged (%d chars)", len(data))
            return [f"{line}\n"]
        if not isinstance(chunk, dict):
            return [f"{line}\n"]

        self._template = {key: value for key, value in chunk.items() if key != "choices"}
        self._rewrite_chunk(chunk)
        return [f"{_DATA_PREFIX} {orjson.dumps(chunk).decode()}\n"]

    def finish(self) -> list[str]:
        """Synthetic chunks for every choice that still holds text. Idempotent."""
        if self._finished:
            return []
        self._finished = True
        out: list[str] = []
        for index in sorted(self._restorers):
            tail = self._restorers[index].flush()
            if tail:
                out.append(self._synthetic_chunk(index, tail))
        return out
