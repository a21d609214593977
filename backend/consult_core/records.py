from __future__ import annotations

import json
from typing import Any

NDJSON_MEDIA_TYPE = "application/x-ndjson"
STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def emit_record(kind: str, **data: Any) -> str:
    return json.dumps({"type": kind, **data}, ensure_ascii=False) + "\n"


def delta_record(delta: str) -> str:
    return emit_record("delta", delta=delta)


def final_record(reply: str, consultation_id: str | None) -> str:
    return emit_record("final", reply=reply, consultation_id=consultation_id)


def error_record(message: str) -> str:
    return emit_record("error", error=message)
