"""Incremental framing for upstream event streams.

Upstream reads may split a frame anywhere, including inside a multi-byte
UTF-8 sequence or a JSON payload, so bytes are decoded incrementally and
frames are only handed out once they are complete.
"""

import codecs
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Frame:
    """One complete upstream event."""

    data: str
    event: Optional[str] = None
    raw: str = ""


class FrameParser:
    """Split a byte stream into SSE frames (``ndjson=False``) or JSON lines."""

    def __init__(self, ndjson: bool = False) -> None:
        self.ndjson = ndjson
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[Frame]:
        self._buffer += self._decoder.decode(data)
        self._buffer = self._buffer.replace("\r\n", "\n")
        return self._drain(final=False)

    def close(self) -> List[Frame]:
        """Return whatever complete-looking frame remains at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        return self._drain(final=True)

    def _drain(self, final: bool) -> List[Frame]:
        separator = "\n" if self.ndjson else "\n\n"
        frames = []
        while separator in self._buffer:
            block, self._buffer = self._buffer.split(separator, 1)
            frame = self._parse(block)
            if frame is not None:
                frames.append(frame)
        if final and self._buffer.strip():
            frame = self._parse(self._buffer)
            if frame is not None:
                frames.append(frame)
            self._buffer = ""
        return frames

    def _parse(self, block: str) -> Optional[Frame]:
        if not block.strip():
            return None
        if self.ndjson:
            return Frame(data=block.strip(), raw=block)
        event = None
        data_lines = []
        for line in block.split("\n"):
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event = value.strip()
            elif field == "data":
                data_lines.append(value)
        if not data_lines:
            return None
        return Frame(data="\n".join(data_lines), event=event, raw=block)
