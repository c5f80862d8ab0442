"""Event metadata, envelopes and dispatchers.

An ``Envelope`` holds ``EventMeta`` and a JSON-encoded payload; it is the
unit written to an outbox and published to brokers.
"""

from __future__ import annotations

import dataclasses
import json
import os
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .broker import Message


class EventError(Exception):
    """An event could not be encoded, decoded or stored."""


class DispatchError(EventError):
    """An in-process event handler failed."""


class NoTransactionError(EventError):
    """Outbox dispatch was attempted outside a transaction."""


def new_id() -> str:
    """Return a new time-ordered UUID (version 7) as a string."""
    ms = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    rand_a = rand >> 68 & 0xFFF
    rand_b = rand & ((1 << 62) - 1)
    value = (
        (ms & ((1 << 48) - 1)) << 80
        | 0x7 << 76
        | rand_a << 64
        | 0b10 << 62
        | rand_b
    )
    return str(uuid.UUID(int=value))


_FRACTION = re.compile(r"\.(\d+)")


def _format_time(value: datetime) -> str:
    text = value.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _parse_time(text: str) -> datetime:
    text = text.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return datetime.fromisoformat(text)


@dataclass
class EventMeta:
    """Metadata carried by every published event.

    ``name`` is dot-separated ``entity.action``; ``version`` is the payload
    schema version; ``occurred_at`` is the domain time of the event.
    ``headers`` is a free extension slot (``entity_id`` is used by
    ``OutboxDispatcher`` as the partition key).
    """

    id: str = ""
    name: str = ""
    version: int = 0
    occurred_at: Optional[datetime] = None
    correlation_id: str = ""
    causation_id: str = ""
    source: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def with_correlation(self, correlation_id: str, causation_id: str) -> EventMeta:
        """Return a copy with the given correlation and causation IDs."""
        return dataclasses.replace(
            self, correlation_id=correlation_id, causation_id=causation_id
        )

    def with_source(self, source: str) -> EventMeta:
        """Return a copy with the given producer name."""
        return dataclasses.replace(self, source=source)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of the metadata."""
        return {
            "ID": self.id,
            "Name": self.name,
            "Version": self.version,
            "OccurredAt": _format_time(self.occurred_at) if self.occurred_at else None,
            "CorrelationID": self.correlation_id,
            "CausationID": self.causation_id,
            "Source": self.source,
            "Headers": dict(self.headers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EventMeta:
        """Build metadata from its JSON form; raise ``ValueError`` if malformed."""
        if not isinstance(data, Mapping):
            raise ValueError("event meta must be an object")
        version = data.get("Version", 0)
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValueError(f"event meta Version must be an integer, got {version!r}")
        occurred = data.get("OccurredAt")
        if occurred is not None and not isinstance(occurred, str):
            raise ValueError(f"event meta OccurredAt must be a string, got {occurred!r}")
        headers = data.get("Headers") or {}
        if not isinstance(headers, Mapping):
            raise ValueError("event meta Headers must be an object")
        return cls(
            id=str(data.get("ID") or ""),
            name=str(data.get("Name") or ""),
            version=version,
            occurred_at=_parse_time(occurred) if occurred else None,
            correlation_id=str(data.get("CorrelationID") or ""),
            causation_id=str(data.get("CausationID") or ""),
            source=str(data.get("Source") or ""),
            headers={str(k): str(v) for k, v in headers.items()},
        )


def new_meta(name: str, version: int) -> EventMeta:
    """Return metadata with a fresh ID and the current time."""
    return EventMeta(
        id=new_id(),
        name=name,
        version=version,
        occurred_at=datetime.now(timezone.utc),
    )


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return _format_time(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> bytes:
    return json.dumps(
        value, default=_json_default, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


@dataclass
class Envelope:
    """Event metadata plus its JSON-encoded payload."""

    meta: EventMeta
    payload: bytes = b""

    def decode_payload(self) -> Any:
        """Return the decoded JSON payload."""
        try:
            return json.loads(self.payload)
        except ValueError as exc:
            raise EventError(f"event: decode payload for {self.meta.name}: {exc}") from exc

    def to_broker_message(self, topic: str, key: str) -> Message:
        """Encode the whole envelope as a broker message.

        Headers carry the event name, version, correlation and causation IDs
        so transports can filter without parsing the body.
        """
        try:
            body = json.loads(self.payload) if self.payload else None
            data = _dumps({"meta": self.meta.to_dict(), "payload": body})
        except (TypeError, ValueError) as exc:
            raise EventError(f"event: marshal envelope {self.meta.name}: {exc}") from exc
        return Message(
            id=self.meta.id,
            topic=topic,
            key=key,
            payload=data,
            headers={
                "event_name": self.meta.name,
                "event_version": str(self.meta.version),
                "correlation_id": self.meta.correlation_id,
                "causation_id": self.meta.causation_id,
            },
        )


def new_envelope(meta: EventMeta, payload: Any) -> Envelope:
    """Encode ``payload`` as JSON and wrap it with ``meta``."""
    try:
        data = _dumps(payload)
    except (TypeError, ValueError) as exc:
        raise EventError(f"event: marshal payload for {meta.name}: {exc}") from exc
    return Envelope(meta=meta, payload=data)


def from_broker_message(msg: Message) -> Envelope:
    """Parse an envelope from a broker message's payload."""
    try:
        data = json.loads(msg.payload)
        if not isinstance(data, dict):
            raise ValueError("envelope must be a JSON object")
        meta = EventMeta.from_dict(data.get("meta") or {})
        payload = _dumps(data["payload"]) if "payload" in data else b""
    except (TypeError, ValueError) as exc:
        raise EventError(f"event: unmarshal envelope: {exc}") from exc
    return Envelope(meta=meta, payload=payload)


class Dispatcher(ABC):
    """Publishes events."""

    @abstractmethod
    def dispatch(self, *events: Envelope) -> None:
        """Dispatch the given events in order."""


EventHandler = Callable[[Envelope], None]


class InProcessDispatcher(Dispatcher):
    """Routes events synchronously to handlers registered by event name.

    Handlers run in registration order; the first failure stops the chain.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event_name: str, handler: EventHandler) -> None:
        """Register ``handler`` for events named ``event_name``."""
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

    def dispatch(self, *events: Envelope) -> None:
        for env in events:
            with self._lock:
                handlers = list(self._handlers.get(env.meta.name, ()))
            for handler in handlers:
                try:
                    handler(env)
                except Exception as exc:
                    raise DispatchError(f"dispatch {env.meta.name}: {exc}") from exc


class Storer(ABC):
    """Writes envelopes to the outbox table within a transaction."""

    @abstractmethod
    def store(self, tx: Any, topic: str, key: str, *events: Envelope) -> None:
        """Store ``events`` under ``topic`` and ``key`` using ``tx``."""


class OutboxDispatcher(Dispatcher):
    """Writes events to the outbox within the caller's transaction.

    ``tx_from_context`` returns the active transaction, or ``None`` when no
    transaction is open. Each event is stored with topic ``meta.name`` and
    key ``meta.headers["entity_id"]`` (empty if absent), with ``source``
    applied to its metadata.
    """

    def __init__(
        self, writer: Storer, tx_from_context: Callable[[], Any], source: str
    ) -> None:
        self.writer = writer
        self.tx_from_context = tx_from_context
        self.source = source

    def dispatch(self, *events: Envelope) -> None:
        if not events:
            return
        tx = self.tx_from_context()
        if tx is None:
            raise NoTransactionError(
                "event/outbox: no tx in context — Dispatch must run within a "
                "transaction scope"
            )
        for env in events:
            stamped = dataclasses.replace(env, meta=env.meta.with_source(self.source))
            topic = stamped.meta.name
            key = stamped.meta.headers.get("entity_id", "")
            try:
                self.writer.store(tx, topic, key, stamped)
            except Exception as exc:
                raise EventError(f"event/outbox: store {topic}: {exc}") from exc