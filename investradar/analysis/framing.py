"""Frame codec for the analysis stream.

A frame is one compact JSON object followed by the literal ``__END_OF_OBJECT__``.
Every underscore in the serialized JSON is written as a JSON unicode escape, so
the delimiter can never occur inside a payload. The decoder does not depend on
that: it simply splits on the first delimiter occurrence.
"""
import codecs
import json
import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from investradar.app.errors import StreamDecodeError
from investradar.app.schemas import AnalysisEvent, ErrorEvent, analysis_event_adapter

logger = logging.getLogger(__name__)

DELIMITER = "__END_OF_OBJECT__"
FINAL_FRAME_ERROR = "Failed to parse final data from stream."

_ESCAPED_UNDERSCORE = "\\u%04x" % ord("_")


def encode_event(event: AnalysisEvent) -> bytes:
    # Our keys carry no underscore and no JSON escape sequence contains one,
    # so every "_" here sits inside a string value.
    payload = json.dumps(event.model_dump(mode="json"), separators=(",", ":"), ensure_ascii=False)
    return (payload.replace("_", _ESCAPED_UNDERSCORE) + DELIMITER).encode("utf-8")


def parse_frame(frame: str) -> AnalysisEvent:
    """Parse one frame payload, raising StreamDecodeError when it is not exactly one known event."""
    try:
        return analysis_event_adapter.validate_json(frame)
    except PydanticValidationError as exc:
        raise StreamDecodeError(f"Malformed frame ({exc.error_count()} validation errors)") from exc


class FrameDecoder:
    """Incremental decoder turning arbitrarily chunked bytes into analysis events.

    Single pass: feed() every chunk in arrival order, then call finish() once.
    """

    def __init__(self, delimiter: str = DELIMITER):
        self.delimiter = delimiter
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[AnalysisEvent]:
        self._buffer += self._decoder.decode(data)
        parts = self._buffer.split(self.delimiter)
        # The last part is an undelimited tail; keep it for the next read.
        self._buffer = parts.pop()
        events = []
        for part in parts:
            event = self._parse_or_skip(part)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> List[AnalysisEvent]:
        """Flush the decoder and parse whatever is left as the final frame."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if not tail.strip():
            return []
        try:
            return [parse_frame(tail)]
        except StreamDecodeError as exc:
            logger.error("Error parsing final frame from buffer: %s (%r)", exc, tail[:200])
            return [ErrorEvent(error=FINAL_FRAME_ERROR)]

    def _parse_or_skip(self, part: str) -> Optional[AnalysisEvent]:
        if not part.strip():
            return None
        try:
            return parse_frame(part)
        except StreamDecodeError as exc:
            logger.warning("Skipping malformed stream frame: %s (%r)", exc, part[:200])
            return None
