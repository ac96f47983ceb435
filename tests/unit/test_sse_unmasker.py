from __future__ import annotations

import json

from maskproxy.core.masking.placeholders import ANGLE_FORMAT
from maskproxy.core.masking.reversible import ReversibleMaskingEngine
from maskproxy.guard import ProtectionContexts, StreamRestorer
from maskproxy.proxy.sse import SSEUnmasker


def _contexts() -> ProtectionContexts:
    contexts = ProtectionContexts()
    contexts.pii.placeholder_for("PERSON", "Ann Lee", ANGLE_FORMAT)
    return contexts


def _unmasker() -> SSEUnmasker:
    contexts = _contexts()
    engine = ReversibleMaskingEngine(ANGLE_FORMAT)
    return SSEUnmasker(lambda: StreamRestorer(contexts, engine))


def _chunk(index: int, content: str | None, finish_reason: str | None = None) -> str:
    delta = {} if content is None else {"content": content}
    payload = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "model": "gpt-test",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload)}"


def _contents(lines: list[str]) -> list[tuple[int, str]]:
    out: list[tuple[int, str]] = []
    for line in "".join(lines).splitlines():
        if not line.startswith("data: ") or line == "data: [DONE]":
            continue
        for choice in json.loads(line[len("data: ") :])["choices"]:
            content = choice.get("delta", {}).get("content")
            if content:
                out.append((choice["index"], content))
    return out


def test_split_placeholder_across_sse_chunks() -> None:
    unmasker = _unmasker()
    lines: list[str] = []
    for raw in [_chunk(0, "Hello <PER"), "", _chunk(0, "SON_1>!"), "", _chunk(0, None, "stop"), "", "data: [DONE]", ""]:
        lines.extend(unmasker.feed_line(raw))

    assert _contents(lines) == [(0, "Hello "), (0, "Ann Lee!")]
    assert lines[-2] == "data: [DONE]\n"
    assert unmasker.replaced == 1


def test_held_tail_is_appended_to_finish_chunk() -> None:
    unmasker = _unmasker()
    lines: list[str] = []
    for raw in [_chunk(0, "a < b and <PERSON"), "", _chunk(0, None, "stop"), ""]:
        lines.extend(unmasker.feed_line(raw))

    assert _contents(lines) == [(0, "a < b and "), (0, "<PERSON")]


def test_choices_are_restored_independently() -> None:
    unmasker = _unmasker()
    lines: list[str] = []
    for raw in [_chunk(0, "<PERSON"), _chunk(1, "Hi <PER"), _chunk(0, "_1> ok"), _chunk(1, "SON_1>")]:
        lines.extend(unmasker.feed_line(raw))
    lines.extend(unmasker.finish())

    assert _contents(lines) == [(1, "Hi "), (0, "Ann Lee ok"), (1, "Ann Lee")]


def test_synthetic_flush_chunk_before_done() -> None:
    unmasker = _unmasker()
    lines: list[str] = []
    for raw in [_chunk(0, "bye <PERSON_"), "", "data: [DONE]"]:
        lines.extend(unmasker.feed_line(raw))

    flush_line = lines[-2]
    assert flush_line.startswith("data: ")
    synthetic = json.loads(flush_line[len("data: ") :])
    assert synthetic["id"] == "chatcmpl-1"
    assert synthetic["choices"] == [{"index": 0, "delta": {"content": "<PERSON_"}, "finish_reason": None}]
    assert lines[-1] == "data: [DONE]\n"
    assert unmasker.finish() == []


def test_non_data_lines_pass_through() -> None:
    unmasker = _unmasker()

    assert unmasker.feed_line(": keep-alive") == [": keep-alive\n"]
    assert unmasker.feed_line("") == ["\n"]
    assert unmasker.feed_line("data: not json") == ["data: not json\n"]
