"""Event-driven helpers: message brokers, event envelopes and dispatchers, and table DDL."""

__all__ = ["broker", "event", "migration"]