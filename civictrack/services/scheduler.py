# File: civictrack/services/scheduler.py
"""
Background analytics refresh.

A single daemon thread calls ``analytics_refresh.refresh`` every
``ANALYTICS_REFRESH_INTERVAL_MINUTES``. ``stop()`` sets an event that both
ends the loop and cancels an in-flight refresh before its swap, so shutting
down never leaves a half-written fact table. Errors are logged and the loop
keeps going with the previous snapshot.

Usage:
    scheduler = RefreshScheduler(interval_minutes=60)
    scheduler.start()
    ...
    scheduler.stop()
"""

import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from civictrack.db.session import SessionLocal
from civictrack.services import analytics_refresh

logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(self, interval_minutes: int, session_factory: Callable[[], Session] = SessionLocal) -> None:
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self.interval_seconds = interval_minutes * 60
        self.session_factory = session_factory
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="analytics-refresh", daemon=True)
        self._thread.start()
        logger.info("analytics refresh scheduler started (every %s s)", self.interval_seconds)

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("analytics refresh scheduler stopped")

    def run_once(self) -> Optional[dict]:
        """Run one refresh in a fresh session. Never raises."""
        db = self.session_factory()
        try:
            run = analytics_refresh.refresh(db, trigger="scheduled", cancel_event=self._stop)
            return {"id": run.id, "status": run.status.value, "rowCount": run.row_count}
        except Exception:
            logger.exception("scheduled analytics refresh failed")
            return None
        finally:
            db.close()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
