"""Per-session signal collection.

Each session owns a ``SignalCollector`` wrapping a bounded ring buffer, so a
chatty client can never grow memory beyond ``max_events`` per session. The
``SessionStore`` keeps sessions keyed by identity key, expires them lazily on
access and optionally sweeps them from a background task.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from fastapi_botguard.events import BaseEvent
from fastapi_botguard.features import FeatureExtractor, FeatureVector
from fastapi_botguard.utils import ShardedLockMap

logger = logging.getLogger(__name__)


class CollectorConfig(BaseModel):
    """Configuration for session tracking and event buffers."""

    max_events: int = Field(default=500, gt=0)
    inactivity_timeout_seconds: float = Field(default=1800.0, gt=0)
    max_sessions: int = Field(default=10000, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    js_beacon_timeout_seconds: float = Field(default=10.0, gt=0)
    lock_shards: int = Field(default=64, ge=1)


class SignalCollector:
    """Bounded, append-only event buffer of one session."""

    def __init__(self, max_events: int = 500):
        self._buffer: deque = deque(maxlen=max_events)
        self._version = 0
        self._snapshot: Optional[Tuple[int, FeatureVector]] = None

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def max_events(self) -> int:
        return self._buffer.maxlen

    @property
    def version(self) -> int:
        return self._version

    def record(self, event: BaseEvent) -> None:
        # deque(maxlen=...) drops the oldest event once full
        self._buffer.append(event)
        self._version += 1

    def record_many(self, events: Iterable[BaseEvent]) -> int:
        count = 0
        for event in events:
            self.record(event)
            count += 1
        return count

    def events(self) -> Tuple[BaseEvent, ...]:
        """Immutable snapshot of the buffer, oldest first."""
        return tuple(sorted(self._buffer, key=lambda e: e.timestamp))

    def features(self, extractor: FeatureExtractor) -> FeatureVector:
        """Feature vector of the current buffer, recomputed only after appends."""
        if self._snapshot is None or self._snapshot[0] != self._version:
            self._snapshot = (self._version, extractor.extract(self.events()))
        return self._snapshot[1]


class Session:
    """Tracked sequence of client interactions for one identity key."""

    __slots__ = ("key", "created_at", "last_seen", "collector", "js_executed_at", "ended")

    def __init__(self, key: str, now: float, max_events: int):
        self.key = key
        self.created_at = now
        self.last_seen = now
        self.collector = SignalCollector(max_events)
        self.js_executed_at: Optional[float] = None
        self.ended = False

    def is_expired(self, now: float, inactivity_timeout: float) -> bool:
        return self.ended or (now - self.last_seen) > inactivity_timeout

    def js_executed(self, now: float, beacon_timeout: float) -> Optional[bool]:
        """True after a beacon, False once the beacon is overdue, else unknown."""
        if self.js_executed_at is not None:
            return True
        if now - self.created_at >= beacon_timeout:
            return False
        return None


class SessionStore:
    """In-memory session registry with lazy expiry and per-key locking."""

    def __init__(self, config: Optional[CollectorConfig] = None):
        self.config = config or CollectorConfig()
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self._locks = ShardedLockMap(self.config.lock_shards)
        # guards ordering changes of the registry itself, never held while
        # touching a session's buffer
        self._registry_lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweep_hooks: List[Callable[[float], object]] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def _now(self, now: Optional[float]) -> float:
        return time.time() if now is None else now

    def _touch(self, session: Session, now: float) -> None:
        session.last_seen = now
        with self._registry_lock:
            if session.key in self._sessions:
                self._sessions.move_to_end(session.key)

    def _lookup(self, key: str, now: float) -> Optional[Session]:
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(now, self.config.inactivity_timeout_seconds):
            logger.debug(f"Session {key[:8]} expired on access")
            self._discard(key)
            return None
        return session

    def _discard(self, key: str) -> None:
        with self._registry_lock:
            self._sessions.pop(key, None)

    def _enforce_capacity(self) -> None:
        with self._registry_lock:
            while len(self._sessions) > self.config.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.debug(f"Evicted least recently seen session {evicted[:8]}")

    def get(self, key: str, now: Optional[float] = None) -> Optional[Session]:
        """Return the live session for ``key`` or None if absent/expired."""
        now = self._now(now)
        with self._locks.lock_for(key):
            return self._lookup(key, now)

    def get_or_create(self, key: str, now: Optional[float] = None) -> Session:
        now = self._now(now)
        with self._locks.lock_for(key):
            session = self._lookup(key, now)
            if session is None:
                session = Session(key, now, self.config.max_events)
                with self._registry_lock:
                    self._sessions[key] = session
                logger.debug(f"Created session {key[:8]}")
            else:
                self._touch(session, now)
        self._enforce_capacity()
        return session

    def record(self, key: str, events: Iterable[BaseEvent], now: Optional[float] = None) -> Session:
        """Append events to the session of ``key``, creating it if needed."""
        now = self._now(now)
        session = self.get_or_create(key, now)
        with self._locks.lock_for(key):
            session.collector.record_many(events)
        return session

    def mark_js_executed(self, key: str, now: Optional[float] = None) -> Session:
        now = self._now(now)
        session = self.get_or_create(key, now)
        with self._locks.lock_for(key):
            if session.js_executed_at is None:
                session.js_executed_at = now
        return session

    def snapshot(
        self, key: str, extractor: FeatureExtractor, now: Optional[float] = None
    ) -> Tuple[Optional[Session], Optional[FeatureVector]]:
        """Session and its feature vector, computed under the session's lock."""
        now = self._now(now)
        with self._locks.lock_for(key):
            session = self._lookup(key, now)
            if session is None:
                return None, None
            return session, session.collector.features(extractor)

    def end(self, key: str) -> bool:
        """Destroy the session explicitly."""
        with self._locks.lock_for(key):
            session = self._sessions.get(key)
            if session is None:
                return False
            session.ended = True
            self._discard(key)
            return True

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove every expired session; returns how many were dropped."""
        now = self._now(now)
        with self._registry_lock:
            candidates: List[str] = list(self._sessions)
        removed = 0
        for key in candidates:
            with self._locks.lock_for(key):
                session = self._sessions.get(key)
                if session and session.is_expired(now, self.config.inactivity_timeout_seconds):
                    self._discard(key)
                    removed += 1
        if removed:
            logger.debug(f"Swept {removed} expired sessions")
        return removed

    def add_sweep_hook(self, hook: Callable[[float], object]) -> None:
        """Run `hook(now)` after every background sweep."""
        self._sweep_hooks.append(hook)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            now = time.time()
            self.sweep(now)
            for hook in self._sweep_hooks:
                hook(now)

    def start_sweeper(self) -> None:
        """Start the low-priority background sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(
                f"Session sweeper started (every {self.config.sweep_interval_seconds:g}s)"
            )

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        logger.info("Session sweeper stopped")
