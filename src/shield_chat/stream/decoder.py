"""Incremental decoder for the line-oriented text-event protocol.

Wire format (one field per line, `\\n` separated, trailing `\\r` tolerated)::

    : tokens_used=120, tokens_limit=100000      <- comment, metadata side channel
    event: usage                                <- label for the next block
    data: {"tokens_used": 140}
                                                <- blank line ends the block
    data: Hello                                 <- content (default label)
    event: control
    data: {"level": "warn", "code": "x", "message": "..."}

    data: [END]                                 <- terminates the whole stream

Blocks labelled `header`, `usage` or `meta` never become content; their
payload is parsed like a comment and fed to the usage meter.
"""

from __future__ import annotations

import codecs
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from shield_chat.types import StreamEvent, StreamEventKind

END_SENTINEL = "[END]"
DEFAULT_LABEL = "message"
RESERVED_LABELS = frozenset({"header", "usage", "meta"})
CONTROL_LABELS = frozenset({"control", "guardrail"})
GUARD_KEYS = ("level", "severity", "error", "warning", "guard")

_PAIR_SPLIT = re.compile(r"[,;]")
_LIMIT_WORDS = ("limit", "max", "cap", "total")


def parse_metadata(text: str) -> dict[str, Any]:
    """Parse a JSON object or `key: value` / `key=value` pairs split by `,`/`;`."""

    stripped = (text or "").strip()
    if not stripped:
        return {}
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            return _flatten(payload)

    result: dict[str, Any] = {}
    for part in _PAIR_SPLIT.split(stripped):
        positions = [pos for pos in (part.find(":"), part.find("=")) if pos > 0]
        if not positions:
            continue
        cut = min(positions)
        key = part[:cut].strip()
        if key:
            result[key] = _coerce_scalar(part[cut + 1 :].strip())
    return result


@dataclass(slots=True)
class ResourceUsage:
    used: float | None = None
    limit: float | None = None

    @property
    def remaining(self) -> float | None:
        if self.used is None or self.limit is None:
            return None
        return max(0.0, self.limit - self.used)


@dataclass(slots=True)
class UsageMeter:
    """Tracks used/limit pairs for the `tokens` and `time` resource classes.

    Keys are classified by case-insensitive substring: `token` selects the
    token class, `minute` or `time` the time class; a key that also contains
    `limit`, `max`, `cap` or `total` updates the limit, otherwise the usage.
    """

    resources: dict[str, ResourceUsage] = field(
        default_factory=lambda: {"tokens": ResourceUsage(), "time": ResourceUsage()}
    )

    def update(self, metadata: dict[str, Any]) -> bool:
        changed = False
        for key, value in metadata.items():
            resource = _classify(key)
            number = _as_number(value)
            if resource is None or number is None:
                continue
            usage = self.resources.setdefault(resource, ResourceUsage())
            if any(word in key.lower() for word in _LIMIT_WORDS):
                usage.limit = number
            else:
                usage.used = number
            changed = True
        return changed

    def snapshot(self) -> dict[str, dict[str, float | None]]:
        return {
            name: {"used": usage.used, "limit": usage.limit}
            for name, usage in self.resources.items()
        }


class StreamDecoder:
    """Turns arbitrarily split text (or UTF-8 byte) chunks into `StreamEvent`s.

    Only complete lines are interpreted; a partial line stays buffered until
    its terminator arrives, so the event sequence does not depend on how the
    input was chunked. Events come out in arrival order and nothing is
    re-parsed. After the `[END]` sentinel the decoder ignores further input.
    """

    def __init__(
        self,
        *,
        usage: UsageMeter | None = None,
        on_metadata: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.usage = usage or UsageMeter()
        self._on_metadata = on_metadata
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._label = DEFAULT_LABEL
        self._block: list[str] = []
        self.finished = False

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        if self.finished:
            return []
        if isinstance(chunk, bytes):
            chunk = self._bytes.decode(chunk)
        self._buffer += chunk

        events: list[StreamEvent] = []
        while not self.finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            events.extend(self._process_line(line))
        return events

    def close(self) -> list[StreamEvent]:
        """Flush a trailing unterminated line and finish the stream."""

        if self.finished:
            return []
        self._buffer += self._bytes.decode(b"", final=True)
        events: list[StreamEvent] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            events.extend(self._process_line(line))
        if not self.finished:
            events.extend(self._dispatch())
            events.append(self._finish())
        return events

    def _process_line(self, line: str) -> list[StreamEvent]:
        if line.endswith("\r"):
            line = line[:-1]
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            self._handle_metadata(line[1:])
            return []
        if line.startswith("event:"):
            self._label = line[len("event:") :].strip() or DEFAULT_LABEL
            return []
        if not line.startswith("data:"):
            return []

        value = line[len("data:") :]
        if value.startswith(" "):
            value = value[1:]
        if value == END_SENTINEL:
            self._block = []
            return [self._finish()]
        if self._label != DEFAULT_LABEL:
            self._block.append(value)
            return []
        return self._message_line(value)

    def _message_line(self, value: str) -> list[StreamEvent]:
        control = _inline_control(value)
        if control is not None:
            return [StreamEvent(kind=StreamEventKind.CONTROL, payload=control)]
        if not value:
            return []
        return [StreamEvent(kind=StreamEventKind.CONTENT, payload=value)]

    def _dispatch(self) -> list[StreamEvent]:
        label, block = self._label, self._block
        self._label = DEFAULT_LABEL
        self._block = []
        if not block:
            return []

        payload = "\n".join(block)
        if label in RESERVED_LABELS:
            self._handle_metadata(payload)
            return []
        if label in CONTROL_LABELS:
            return [StreamEvent(kind=StreamEventKind.CONTROL, payload=_parse_control(payload))]
        return [StreamEvent(kind=StreamEventKind.CONTENT, payload=payload)]

    def _handle_metadata(self, text: str) -> None:
        metadata = parse_metadata(text)
        if not metadata:
            return
        self.usage.update(metadata)
        if self._on_metadata is not None:
            self._on_metadata(metadata)

    def _finish(self) -> StreamEvent:
        self.finished = True
        self._buffer = ""
        return StreamEvent(kind=StreamEventKind.END)


async def decode_stream(
    chunks: AsyncIterable[str | bytes], decoder: StreamDecoder | None = None
) -> AsyncIterator[StreamEvent]:
    """Pull-based adapter: yields events as soon as their line is complete."""

    active = decoder or StreamDecoder()
    iterator = chunks.__aiter__()
    try:
        async for chunk in iterator:
            for event in active.feed(chunk):
                yield event
                if event.kind is StreamEventKind.END:
                    return
        for event in active.close():
            yield event
    finally:
        close = getattr(iterator, "aclose", None)
        if close is not None:
            await close()


def encode_event(data: str, event: str | None = None) -> str:
    """Serialize one block of the protocol (used by the service surface)."""

    if event is None and "\n" in data:
        # Bare data lines concatenate, so multi-line text travels as a labelled block.
        event = "text"
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


def encode_end() -> str:
    return f"data: {END_SENTINEL}\n\n"


def _inline_control(value: str) -> dict[str, Any] | None:
    if not value.lstrip().startswith("{"):
        return None
    try:
        payload = json.loads(value)
    except ValueError:
        return None
    if isinstance(payload, dict) and any(key in payload for key in GUARD_KEYS):
        return payload
    return None


def _parse_control(payload: str) -> dict[str, Any]:
    try:
        parsed = json.loads(payload)
    except ValueError:
        return {"message": payload}
    if isinstance(parsed, dict):
        return parsed
    return {"message": str(parsed)}


def _flatten(payload: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{name}."))
        else:
            flat[name] = value
    return flat


def _coerce_scalar(value: str) -> Any:
    number = _as_number(value)
    return value if number is None else number


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _classify(key: str) -> str | None:
    lowered = key.lower()
    if "token" in lowered:
        return "tokens"
    if "minute" in lowered or "time" in lowered:
        return "time"
    return None
