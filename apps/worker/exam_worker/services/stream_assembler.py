from __future__ import annotations

import codecs
import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from exam_worker.errors import EmptyStreamError

_FRAGMENT_MARKERS = ("candidates", "usageMetadata", "error")


@dataclass
class AssembledResponse:
    text: str
    finish_reason: str | None = None
    role: str | None = None
    usage: dict | None = None
    error: dict | None = None
    fragment_count: int = 0

    @classmethod
    def from_fragments(cls, fragments: list[dict]) -> AssembledResponse:
        texts: list[str] = []
        finish_reason: str | None = None
        role: str | None = None
        usage: dict | None = None
        error: dict | None = None

        for fragment in fragments:
            candidate = _first_candidate(fragment)
            if candidate is not None:
                content = candidate.get("content")
                if isinstance(content, dict):
                    texts.extend(_part_texts(content.get("parts")))
                    if content.get("role"):
                        role = str(content["role"])
                if candidate.get("finishReason"):
                    finish_reason = str(candidate["finishReason"])
            if isinstance(fragment.get("usageMetadata"), dict):
                usage = fragment["usageMetadata"]
            if fragment.get("error") is not None:
                error = fragment["error"] if isinstance(fragment["error"], dict) else {"message": str(fragment["error"])}

        return cls(
            text="".join(texts),
            finish_reason=finish_reason,
            role=role,
            usage=usage,
            error=error,
            fragment_count=len(fragments),
        )

    @classmethod
    def from_payload(cls, payload: dict) -> AssembledResponse:
        """Wrap a single non-streamed response body."""
        return cls.from_fragments([payload])


class StreamResponseAssembler:
    """Recover concatenated JSON objects from a chunked response body.

    Scan state (depth, string and escape flags, the unconsumed tail) is
    carried between ``feed`` calls, so a read may end anywhere, including
    in the middle of an object or a string.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._buffer = ""
        self._scan_pos = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._start = -1
        self._fragments: list[dict] = []

    @property
    def fragments(self) -> list[dict]:
        return list(self._fragments)

    def feed(self, text: str) -> list[dict]:
        """Consume one read and return the fragments it completed."""
        buffer = self._buffer + text
        recognized: list[dict] = []

        for index in range(self._scan_pos, len(buffer)):
            char = buffer[index]
            if self._escaped:
                self._escaped = False
                continue
            if char == "\\":
                self._escaped = True
                continue
            if char == '"':
                self._in_string = not self._in_string
                continue
            if self._in_string:
                continue
            if char == "{":
                if self._depth == 0:
                    self._start = index
                self._depth += 1
            elif char == "}" and self._depth > 0:
                self._depth -= 1
                if self._depth == 0:
                    fragment = self._parse_candidate(buffer[self._start : index + 1])
                    if fragment is not None:
                        recognized.append(fragment)
                    self._start = -1

        if self._depth > 0:
            self._buffer = buffer[self._start :]
            self._scan_pos = len(buffer) - self._start
            self._start = 0
        else:
            # Text between top-level objects ("[", ",", newlines) is never needed.
            self._buffer = ""
            self._scan_pos = 0

        self._fragments.extend(recognized)
        return recognized

    def finish(self) -> AssembledResponse:
        if not self._fragments:
            if self._buffer.strip():
                self._logger.debug("Stream ended inside an object | tail=%s", self._buffer[:200])
            raise EmptyStreamError()
        return AssembledResponse.from_fragments(self._fragments)

    def _parse_candidate(self, candidate: str) -> dict | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            self._logger.debug("Discarding unparseable stream chunk: %s", exc)
            return None
        if not isinstance(parsed, dict) or not any(marker in parsed for marker in _FRAGMENT_MARKERS):
            return None
        return parsed


def assemble_stream(
    chunks: Iterable[str | bytes],
    *,
    cancel_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> AssembledResponse | None:
    """Drain ``chunks`` into one response.

    Returns None when ``cancel_event`` is observed between reads; partial
    fragments are dropped in that case.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    assembler = StreamResponseAssembler(logger=logger)
    for chunk in chunks:
        if cancel_event is not None and cancel_event.is_set():
            return None
        assembler.feed(decoder.decode(chunk) if isinstance(chunk, bytes) else chunk)
    if cancel_event is not None and cancel_event.is_set():
        return None
    assembler.feed(decoder.decode(b"", final=True))
    return assembler.finish()


def _first_candidate(fragment: dict) -> dict | None:
    candidates = fragment.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    candidate = candidates[0]
    return candidate if isinstance(candidate, dict) else None


def _part_texts(parts: object) -> list[str]:
    if not isinstance(parts, list):
        return []
    texts: list[str] = []
    for part in parts:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            texts.append(text)
    return texts
