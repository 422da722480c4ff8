import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path


_TMP_ROOT = Path(tempfile.mkdtemp(prefix="rental-market-tests-"))
os.environ.setdefault("RENTAL_MARKET_DB_URL", f"sqlite+pysqlite:///{_TMP_ROOT / 'market.db'}")
os.environ.setdefault("RENTAL_MARKET_UPLOADS_DIR", str(_TMP_ROOT / "uploads"))
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.session import build_engine, build_session_factory
from services.notification_service import (
    NullNotifier,
    OutboxNotifier,
    QueuedNotifier,
    connect_notifier,
    list_pending_notifications,
    notify,
)


class CountingFactory:
    def __init__(self, factory):
        self.factory = factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.factory()


class BlockingSink:
    def __init__(self):
        self.release = threading.Event()
        self.events = []

    def publish(self, notification_type, entity_id, payload):
        self.release.wait(10)
        self.events.append((notification_type, entity_id))


class NotificationTests(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix="outbox-"))

    def test_connect_without_url_is_null(self):
        self.assertIsInstance(connect_notifier(None), NullNotifier)
        self.assertIsInstance(connect_notifier(""), NullNotifier)

    def test_connect_to_unreachable_store_falls_back_to_null(self):
        missing = self.tmp / "no-such-dir" / "nested" / "outbox.db"
        notifier = connect_notifier(f"sqlite+pysqlite:///{missing}")
        self.assertIsInstance(notifier, NullNotifier)
        notify(notifier, "RequestCreated", 1, {"renterId": 1})

    def test_outbox_records_rows_per_renter(self):
        db_url = f"sqlite+pysqlite:///{self.tmp / 'outbox.db'}"
        notifier = connect_notifier(db_url, retry_seconds=5)
        self.assertIsInstance(notifier, OutboxNotifier)

        notify(notifier, "RequestCreated", 10, {"requestId": 10, "renterId": 1, "status": "Requested"})
        notify(notifier, "ListingCreated", 3, {"listingId": 3, "renterId": 2})

        session_factory = build_session_factory(build_engine(db_url))
        with session_factory() as db:
            mine = list_pending_notifications(db, 1)
            theirs = list_pending_notifications(db, 2)
        self.assertEqual([(item["type"], item["entityID"]) for item in mine], [("RequestCreated", 10)])
        self.assertEqual(mine[0]["payload"]["status"], "Requested")
        self.assertEqual([item["type"] for item in theirs], ["ListingCreated"])

    def test_failed_publish_suspends_outbox(self):
        # No NotificationQueue table here, so every insert fails.
        engine = build_engine(f"sqlite+pysqlite:///{self.tmp / 'empty.db'}")
        factory = CountingFactory(build_session_factory(engine))
        notifier = OutboxNotifier(factory, retry_seconds=60)

        notifier.publish("RequestCreated", 1, {"renterId": 1})
        self.assertTrue(notifier.suspended)
        self.assertEqual(factory.calls, 1)

        notifier.publish("RequestCreated", 2, {"renterId": 1})
        self.assertEqual(factory.calls, 1)

    def test_zero_cooldown_retries_immediately(self):
        engine = build_engine(f"sqlite+pysqlite:///{self.tmp / 'empty.db'}")
        factory = CountingFactory(build_session_factory(engine))
        notifier = OutboxNotifier(factory, retry_seconds=0)

        notifier.publish("RequestCreated", 1, {"renterId": 1})
        self.assertFalse(notifier.suspended)
        notifier.publish("RequestCreated", 2, {"renterId": 1})
        self.assertEqual(factory.calls, 2)

    def test_queued_notifier_returns_before_slow_sink(self):
        sink = BlockingSink()
        notifier = QueuedNotifier(sink)
        started = time.monotonic()
        notifier.publish("ListingCreated", 1, {"renterId": 1})
        notifier.publish("RequestCreated", 2, {"renterId": 1})
        self.assertLess(time.monotonic() - started, 1.0)

        sink.release.set()
        notifier.close(timeout=10)
        self.assertEqual(sink.events, [("ListingCreated", 1), ("RequestCreated", 2)])

    def test_queued_notifier_drops_when_full(self):
        sink = BlockingSink()
        notifier = QueuedNotifier(sink, maxsize=1)
        with self.assertLogs("rental_market.notifications", level="WARNING"):
            for entity_id in range(5):
                notifier.publish("RequestCreated", entity_id, {"renterId": 1})

        sink.release.set()
        notifier.close(timeout=10)
        self.assertGreaterEqual(len(sink.events), 1)
        self.assertLessEqual(len(sink.events), 2)

    def test_queued_notifier_survives_failing_sink(self):
        class Broken:
            def publish(self, notification_type, entity_id, payload):
                raise ConnectionError("down")

        notifier = QueuedNotifier(Broken())
        with self.assertLogs("rental_market.notifications", level="WARNING"):
            notifier.publish("RequestCreated", 1, {})
            notifier.close(timeout=10)

    def test_notify_swallows_publisher_errors(self):
        class Broken:
            def publish(self, notification_type, entity_id, payload):
                raise ConnectionError("down")

        with self.assertLogs("rental_market.notifications", level="WARNING"):
            notify(Broken(), "RequestCreated", 1, {})
        notify(None, "RequestCreated", 1, {})


if __name__ == "__main__":
    unittest.main()
