from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI
from fastapi.responses import StreamingResponse

app = FastAPI(title="mock-upstream-llm")

_last_request: dict[str, Any] | None = None


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/debug/last-request")
async def last_request() -> dict[str, Any]:
    return {"payload": _last_request}


def _last_user_text(payload: dict[str, Any]) -> str:
    messages = payload.get("messages", [])
    if not isinstance(messages, list) or not messages:
        return ""
    last = messages[-1]
    if not isinstance(last, dict):
        return ""
    raw = last.get("content")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return " ".join(item["text"] for item in raw if isinstance(item, dict) and isinstance(item.get("text"), str))
    return ""


@app.post("/v1/chat/completions", response_model=None)
async def chat(payload: dict[str, Any]) -> dict[str, Any] | StreamingResponse:
    global _last_request
    _last_request = payload

    content = f"Processed: {_last_user_text(payload)}"
    completion_id = f"chatcmpl-{uuid.uuid4().hex[:12]}"
    created = int(time.time())
    model = payload.get("model", "mock-model")

    if payload.get("stream"):
        # Small pieces so placeholders arrive split across chunks.
        def events() -> Any:
            for idx in range(0, len(content), 3):
                chunk = {
                    "id": completion_id,
                    "object": "chat.completion.chunk",
                    "created": created,
                    "model": model,
                    "choices": [{"index": 0, "delta": {"content": content[idx : idx + 3]}, "finish_reason": None}],
                }
                yield f"data: {json.dumps(chunk)}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }
