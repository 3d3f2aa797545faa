#!/usr/bin/env python3
"""
event_emitter.py - Observable events from the integrity engine

Purpose: let the application layer see what the engine is doing (a seal
happened, a witness gave up) without the engine knowing who is listening.

Event Tiers:
    Tier 1 (Critical): Always delivered - witness_failed, chain_invalid,
                       checkpoint_invalid
    Tier 2 (System):   checkpoint_sealed, witness_anchored, certificate_issued
    Tier 3 (Debug):    entry_appended, verification_run, append_conflict

Listeners only receive tiers they are configured for; the in-memory buffer
keeps every event regardless of tier.

Usage:
    from integrity_system.core.event_emitter import EventEmitter, EventTier

    emitter = EventEmitter()
    emitter.add_listener(lambda event: print(event.event_type))
    emitter.emit("checkpoint_sealed", {"journal_id": "...", "range": [0, 9]})
"""

import asyncio
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from integrity_system.core.integrity_logger import IntegrityLogger

events_logger = IntegrityLogger("integrity_events")


class EventTier(Enum):
    """Event delivery tiers."""
    CRITICAL = 1   # Always delivered, cannot be filtered out
    SYSTEM = 2     # Normal operational events
    DEBUG = 3      # High-volume detail


@dataclass
class IntegrityEvent:
    """A single engine event."""
    sequence: int
    timestamp: str
    event_type: str
    payload: Dict[str, Any]
    tier: EventTier
    journal_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "type": self.event_type,
            "payload": self.payload,
            "tier": self.tier.value,
            "tier_name": self.tier.name.lower(),
            "journal_id": self.journal_id,
        }


EVENT_TIER_MAP: Dict[str, EventTier] = {
    # Tier 1: anchoring degraded or chain damage found
    "witness_failed": EventTier.CRITICAL,
    "chain_invalid": EventTier.CRITICAL,
    "checkpoint_invalid": EventTier.CRITICAL,

    # Tier 2: lifecycle
    "checkpoint_sealed": EventTier.SYSTEM,
    "witness_anchored": EventTier.SYSTEM,
    "certificate_issued": EventTier.SYSTEM,
    "journal_created": EventTier.SYSTEM,

    # Tier 3: per-entry noise
    "entry_appended": EventTier.DEBUG,
    "append_conflict": EventTier.DEBUG,
    "witness_retry": EventTier.DEBUG,
    "verification_run": EventTier.DEBUG,
}


class EventEmitter:
    """
    Central hub for engine events.

    Safe to call from witness worker threads: sequence assignment and the
    buffer are guarded by a lock, listeners run outside it. Async listeners
    remember the loop they were added on, so events emitted from a worker
    thread still reach them.
    """

    def __init__(
        self,
        stream_tiers: Optional[Set[EventTier]] = None,
        buffer_max_size: int = 1000
    ):
        self._sequence = 0
        self._lock = threading.Lock()
        self._listeners: List[Callable[[IntegrityEvent], None]] = []
        self._async_listeners: List[Tuple[Callable[[IntegrityEvent], Any], Optional[asyncio.AbstractEventLoop]]] = []
        self._pending: Set[Union[asyncio.Task, Future]] = set()

        # Default: everything except debug
        self._stream_tiers = stream_tiers or {EventTier.CRITICAL, EventTier.SYSTEM}
        self._tier_overrides: Dict[str, EventTier] = {}

        self._event_buffer: List[IntegrityEvent] = []
        self._buffer_max_size = buffer_max_size

    def _get_tier(self, event_type: str) -> EventTier:
        """Unknown event types default to DEBUG."""
        if event_type in self._tier_overrides:
            return self._tier_overrides[event_type]
        return EVENT_TIER_MAP.get(event_type, EventTier.DEBUG)

    def _should_stream(self, tier: EventTier) -> bool:
        return tier == EventTier.CRITICAL or tier in self._stream_tiers

    def set_tier_override(self, event_type: str, tier: EventTier) -> None:
        self._tier_overrides[event_type] = tier

    def clear_tier_override(self, event_type: str) -> None:
        self._tier_overrides.pop(event_type, None)

    def set_stream_tiers(self, tiers: Set[EventTier]) -> None:
        self._stream_tiers = tiers

    def add_listener(self, callback: Callable[[IntegrityEvent], None]) -> None:
        """Add synchronous listener for events."""
        self._listeners.append(callback)

    def add_async_listener(
        self,
        callback: Callable[[IntegrityEvent], Any],
        loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        """
        Add coroutine listener.

        Runs on loop, defaulting to the loop running when it is added. A
        listener added outside any loop only sees events emitted inside one.
        """
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        self._async_listeners.append((callback, loop))

    def remove_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)
        self._async_listeners = [(cb, loop) for cb, loop in self._async_listeners if cb != callback]

    def emit(
        self,
        event_type: str,
        payload: Dict[str, Any],
        journal_id: Optional[str] = None,
        tier_override: Optional[EventTier] = None
    ) -> IntegrityEvent:
        """
        Record an event and notify listeners whose tier matches.

        Returns:
            The created IntegrityEvent
        """
        tier = tier_override if tier_override else self._get_tier(event_type)

        with self._lock:
            self._sequence += 1
            event = IntegrityEvent(
                sequence=self._sequence,
                timestamp=datetime.now(timezone.utc).isoformat(),
                event_type=event_type,
                payload=payload,
                tier=tier,
                journal_id=journal_id,
            )
            self._event_buffer.append(event)
            if len(self._event_buffer) > self._buffer_max_size:
                self._event_buffer.pop(0)

        if self._should_stream(tier):
            self._notify_listeners(event)

        return event

    def _notify_listeners(self, event: IntegrityEvent) -> None:
        # A broken listener must not break an append or a seal
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                events_logger.log_warning("LISTENER_ERROR", f"Listener raised: {e}", {
                    "event_type": event.event_type
                })

        if not self._async_listeners:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        for async_listener, home_loop in list(self._async_listeners):
            loop = home_loop or running
            if loop is None or loop.is_closed():
                events_logger.log_debug("ASYNC_LISTENER_SKIPPED", "No event loop for async listener", {
                    "event_type": event.event_type
                })
                continue

            coroutine = async_listener(event)
            try:
                if loop is running:
                    pending = loop.create_task(coroutine)
                else:
                    # Emitted from another thread: hand the coroutine to its loop
                    pending = asyncio.run_coroutine_threadsafe(coroutine, loop)
            except RuntimeError as e:
                coroutine.close()
                events_logger.log_warning("ASYNC_LISTENER_SKIPPED", f"Event loop unavailable: {e}", {
                    "event_type": event.event_type
                })
                continue
            with self._lock:
                self._pending.add(pending)
            pending.add_done_callback(self._async_done)

    def _async_done(self, pending) -> None:
        with self._lock:
            self._pending.discard(pending)
        if pending.cancelled():
            return
        error = pending.exception()
        if error is not None:
            events_logger.log_warning("ASYNC_LISTENER_ERROR", f"Async listener raised: {error!r}")

    def get_recent_events(
        self,
        count: int = 100,
        tier: Optional[EventTier] = None,
        event_type: Optional[str] = None,
        journal_id: Optional[str] = None
    ) -> List[IntegrityEvent]:
        """Recent events from the buffer (newest last)."""
        with self._lock:
            events = list(self._event_buffer)

        if tier is not None:
            events = [e for e in events if e.tier == tier]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if journal_id is not None:
            events = [e for e in events if e.journal_id == journal_id]

        return events[-count:]

    def stats(self) -> Dict[str, Any]:
        tier_counts = {tier.name.lower(): 0 for tier in EventTier}
        type_counts: Dict[str, int] = {}

        with self._lock:
            for event in self._event_buffer:
                tier_counts[event.tier.name.lower()] += 1
                type_counts[event.event_type] = type_counts.get(event.event_type, 0) + 1
            total = self._sequence
            buffered = len(self._event_buffer)
            pending_async = len(self._pending)

        return {
            "total_emitted": total,
            "buffer_size": buffered,
            "buffer_max": self._buffer_max_size,
            "stream_tiers": sorted(t.name.lower() for t in self._stream_tiers),
            "listener_count": len(self._listeners) + len(self._async_listeners),
            "pending_async": pending_async,
            "tier_counts": tier_counts,
            "type_counts": type_counts,
        }
