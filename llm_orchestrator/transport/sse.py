from __future__ import annotations

import codecs
import json
from typing import Any


class SseDecoder:
    """Incremental ``text/event-stream`` decoder.

    Bytes may arrive split anywhere, including inside a multi-byte UTF-8
    sequence or between the ``\\r`` and ``\\n`` of a line ending; only complete
    frames are decoded.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events = []
        while True:
            frame, sep, rest = self._buffer.partition("\n\n")
            if not sep:
                break
            self._buffer = rest
            event = _decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining = self._buffer.replace("\r\n", "\n").rstrip("\r")
        self._buffer = ""
        events = []
        for frame in remaining.split("\n\n"):
            event = _decode_frame(frame)
            if event is not None:
                events.append(event)
        return events


def _decode_frame(frame: str) -> dict[str, Any] | None:
    data_lines = []
    for line in frame.split("\n"):
        if not line.startswith("data:"):
            continue
        value = line[5:]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    payload = "\n".join(data_lines).strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def decode_sse(data: bytes) -> list[dict[str, Any]]:
    decoder = SseDecoder()
    events = decoder.feed(data)
    events.extend(decoder.flush())
    return events
