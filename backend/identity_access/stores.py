"""
In-memory store for SMART EHR-launch context.

Why: The EHR hands us an opaque launch token together with clinical context
(patient, encounter, ...). The authorization flow reads that context once on
callback. Entries live at most ten minutes; a background sweeper evicts stale
entries even if they are never read.

Scope: Single process only. A shared deployment would need Redis or a DB.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional
import logging
import threading
import time


logger = logging.getLogger("carecore.identity_access.stores")

LAUNCH_CONTEXT_TTL_SECONDS = 10 * 60
SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class LaunchContext:
    patient: Optional[str] = None
    encounter: Optional[str] = None
    practitioner: Optional[str] = None
    need_patient_banner: Optional[bool] = None
    need_smart_style_response: Optional[bool] = None
    created_at: float = 0.0

    def stamped(self, now: float) -> "LaunchContext":
        return replace(self, created_at=now)

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {}
        for key in ("patient", "encounter", "practitioner", "need_patient_banner", "need_smart_style_response"):
            val = getattr(self, key)
            if val is not None:
                out[key] = val
        return out


class LaunchContextStore:
    """Launch token -> LaunchContext with TTL and a cancellable sweeper thread."""

    def __init__(
        self,
        *,
        ttl_seconds: float = LAUNCH_CONTEXT_TTL_SECONDS,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._data: Dict[str, LaunchContext] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _expired(self, ctx: LaunchContext, now: float) -> bool:
        return now - ctx.created_at > self.ttl_seconds

    def store(self, token: str, context: LaunchContext) -> None:
        with self._lock:
            self._data[token] = context

    def get(self, token: str) -> Optional[LaunchContext]:
        now = self._clock()
        with self._lock:
            ctx = self._data.get(token)
            if ctx is None:
                return None
            if self._expired(ctx, now):
                self._data.pop(token, None)
                return None
            return ctx

    def remove(self, token: str) -> None:
        with self._lock:
            self._data.pop(token, None)

    def sweep(self) -> int:
        """Evict every entry older than the TTL; return the number evicted."""
        now = self._clock()
        with self._lock:
            stale = [tok for tok, ctx in self._data.items() if self._expired(ctx, now)]
            for tok in stale:
                del self._data[tok]
        if stale:
            logger.debug("Swept %s expired launch contexts", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    # --- Lifecycle --------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="launch-context-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception as exc:  # keep the sweeper alive
                logger.warning("Launch context sweep failed: %s", exc.__class__.__name__)
