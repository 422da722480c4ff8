from __future__ import annotations

import json
import logging
import queue
import threading
import time
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.session import build_engine, build_session_factory
from models.market_models import NotificationQueue


LOGGER = logging.getLogger("rental_market.notifications")
DEFAULT_RETRY_SECONDS = 30.0
DEFAULT_QUEUE_SIZE = 1000
# The outbox gives up on a locked store quickly and relies on the cool-down instead.
OUTBOX_BUSY_TIMEOUT_SECONDS = 2.0


class Notifier(Protocol):
    def publish(self, notification_type: str, entity_id: int | None, payload: dict[str, Any]) -> None:
        ...


class NullNotifier:
    def publish(self, notification_type: str, entity_id: int | None, payload: dict[str, Any]) -> None:
        LOGGER.debug("Notification %s for %s skipped: no sink configured", notification_type, entity_id)


class OutboxNotifier:
    """Appends notifications to the NotificationQueue table through its own sessions.

    A failed insert suspends publishing for `retry_seconds`; calls made during the
    pause return immediately so callers never wait on a dead store.
    """

    def __init__(self, session_factory: sessionmaker, retry_seconds: float = DEFAULT_RETRY_SECONDS):
        self._session_factory = session_factory
        self._retry_seconds = max(float(retry_seconds), 0.0)
        self._lock = threading.Lock()
        self._suspended_until = 0.0

    @property
    def suspended(self) -> bool:
        with self._lock:
            return time.monotonic() < self._suspended_until

    def publish(self, notification_type: str, entity_id: int | None, payload: dict[str, Any]) -> None:
        if self.suspended:
            LOGGER.debug("Notification %s for %s skipped: sink suspended", notification_type, entity_id)
            return

        db = self._session_factory()
        try:
            db.add(
                NotificationQueue(
                    NotificationType=notification_type,
                    EntityID=entity_id,
                    RenterID=payload.get("renterId"),
                    Payload=json.dumps(payload, ensure_ascii=True, default=str),
                    CreatedAt=datetime.now(),
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            with self._lock:
                self._suspended_until = time.monotonic() + self._retry_seconds
            LOGGER.warning(
                "Notification %s for %s dropped, pausing sink for %ss: %s",
                notification_type,
                entity_id,
                self._retry_seconds,
                exc,
            )
        finally:
            db.close()


class QueuedNotifier:
    """Runs another notifier on a worker thread behind a bounded queue.

    `publish` only enqueues, so a slow or locked sink never holds up the caller.
    When the queue is full the notification is dropped and logged.
    """

    def __init__(self, sink: Notifier, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=max(int(maxsize), 1))
        self._worker = threading.Thread(target=self._drain, name="notification-worker", daemon=True)
        self._worker.start()

    def publish(self, notification_type: str, entity_id: int | None, payload: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((notification_type, entity_id, payload))
        except queue.Full:
            LOGGER.warning("Notification %s for %s dropped: queue full", notification_type, entity_id)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                notify(self.sink, *item)
            finally:
                self._queue.task_done()

    def close(self, timeout: float = 5.0) -> None:
        """Stop the worker after it has handled what is already queued."""
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            LOGGER.warning("Notification worker did not drain within %ss", timeout)
            return
        self._worker.join(timeout)


def connect_notifier(db_url: str | None, retry_seconds: float = DEFAULT_RETRY_SECONDS) -> Notifier:
    if not db_url:
        LOGGER.info("Notifications disabled; continuing without a sink")
        return NullNotifier()
    try:
        engine = build_engine(db_url, busy_timeout=OUTBOX_BUSY_TIMEOUT_SECONDS)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        NotificationQueue.__table__.create(bind=engine, checkfirst=True)
    except SQLAlchemyError as exc:
        LOGGER.warning("Notification store unavailable, continuing without it: %s", exc)
        return NullNotifier()
    LOGGER.info("Notification outbox connected")
    return OutboxNotifier(build_session_factory(engine), retry_seconds)


def notify(notifier: Notifier | None, notification_type: str, entity_id: int | None, payload: dict[str, Any]) -> None:
    if notifier is None:
        return
    try:
        notifier.publish(notification_type, entity_id, payload)
    except Exception:
        LOGGER.warning("Notifier %s failed for %s %s", type(notifier).__name__, notification_type, entity_id, exc_info=True)


def list_pending_notifications(db: Session, renter_id: int, limit: int = 100) -> list[dict[str, Any]]:
    rows = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .where(NotificationQueue.RenterID == renter_id)
        .order_by(NotificationQueue.NotificationID)
        .limit(limit)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "type": n.NotificationType,
            "entityID": n.EntityID,
            "payload": _decode_payload(n.Payload),
            "createdAt": n.CreatedAt,
        }
        for n in rows
    ]


def _decode_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}
