"""Line protocol for streamed chat responses.

Each event is one line: the `0:` prefix followed by a JSON object whose
`type` discriminates it. Lines without the prefix carry no payload.

    0:{"type":"text-delta","textDelta":"Hel"}
    0:{"type":"text-delta","textDelta":"lo"}
    0:{"type":"finish"}
"""

from __future__ import annotations

import json
from typing import Any, Optional

STREAM_PREFIX = "0:"

TEXT_DELTA = "text-delta"
FINISH = "finish"
ERROR = "error"


def encode_event(event: dict[str, Any]) -> str:
    return STREAM_PREFIX + json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n"


def text_delta_line(text: str) -> str:
    return encode_event({"type": TEXT_DELTA, "textDelta": text})


def finish_line() -> str:
    return encode_event({"type": FINISH})


def error_line(message: str, *, error_code: str = "upstream_error") -> str:
    return encode_event({"type": ERROR, "message": message, "error_code": error_code})


def parse_line(line: str) -> Optional[dict[str, Any]]:
    """Decode one protocol line; None for anything that is not a prefixed JSON object."""
    line = line.rstrip("\r\n")
    if not line.startswith(STREAM_PREFIX):
        return None
    try:
        event = json.loads(line[len(STREAM_PREFIX):])
    except ValueError:
        return None
    if not isinstance(event, dict):
        return None
    return event
