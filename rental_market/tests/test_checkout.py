import os
import sqlite3
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient


_TMP_ROOT = Path(tempfile.mkdtemp(prefix="rental-market-tests-"))
os.environ.setdefault("RENTAL_MARKET_DB_URL", f"sqlite+pysqlite:///{_TMP_ROOT / 'market.db'}")
os.environ.setdefault("RENTAL_MARKET_UPLOADS_DIR", str(_TMP_ROOT / "uploads"))
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import RentalMarket as app_module
from db.base import Base
from db.session import SessionLocalMarket, engine_market
from models.market_models import RentalListing, RentalRequest
from schemas.listings import UploadedFile
from schemas.requests import CheckoutForm
from services.errors import Conflict
from services.notification_service import OutboxNotifier, QueuedNotifier, connect_notifier
from services.request_service import checkout
from services.storage_service import FileStore


ID_DOC = ("id.pdf", b"%PDF-1.4 identity", "application/pdf")


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, notification_type, entity_id, payload):
        self.events.append((notification_type, entity_id, payload))


class ExplodingNotifier:
    def publish(self, notification_type, entity_id, payload):
        raise RuntimeError("sink down")


class CheckoutTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine_market)
        Base.metadata.create_all(bind=engine_market)
        self.upload_dir = Path(tempfile.mkdtemp(prefix="uploads-"))
        self.store = FileStore(self.upload_dir)
        self.notifier = RecordingNotifier()
        app_module.app.dependency_overrides[app_module.get_file_store] = lambda: self.store
        app_module.app.dependency_overrides[app_module.get_notifier] = lambda: self.notifier

        self.owner = TestClient(app_module.app)
        self.owner.post(
            "/api/renters",
            json={
                "email": "owner@example.com",
                "password": "correct-horse",
                "entityName": "Beat Street Rentals",
                "pocName": "Asha Rao",
                "phoneNumber": "9876543210",
                "location": "Pune",
            },
        )
        self.owner.post("/api/sessions", json={"email": "owner@example.com", "password": "correct-horse"})
        self.customer = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()

    def _listing(self, stock=5, price="100"):
        response = self.owner.post(
            "/api/listings",
            data={"category": "drums", "brand": "Tama", "model": "Imperialstar", "stock": str(stock), "pricePerHour": price},
        )
        self.assertEqual(response.status_code, 201)
        return response.json()["listing"]["listingID"]

    def _checkout(self, listing_id, quantity, hours=2, headers=None, document=ID_DOC):
        files = {"identityDocument": document} if document else None
        return self.customer.post(
            f"/api/listings/{listing_id}/requests",
            data={
                "customerName": "Ravi Kumar",
                "contactNumber": "9123456789",
                "rentalDurationHours": str(hours),
                "quantity": str(quantity),
            },
            files=files,
            headers=headers,
        )

    def _listing_state(self, listing_id):
        return self.owner.get(f"/api/listings/{listing_id}").json()

    def _stored_documents(self):
        folder = self.upload_dir / "documents"
        return sorted(folder.iterdir()) if folder.exists() else []

    def _request_count(self):
        with SessionLocalMarket() as db:
            return db.query(RentalRequest).count()

    def test_partial_checkout_keeps_listing_browsable(self):
        listing_id = self._listing(stock=5)
        response = self._checkout(listing_id, 2, hours=3)
        self.assertEqual(response.status_code, 201)
        body = response.json()["request"]
        self.assertEqual(body["quantity"], 2)
        self.assertEqual(body["totalPrice"], 600.0)
        self.assertEqual(body["status"], "Pending")
        self.assertTrue(body["identityDocument"].startswith("/uploads/documents/"))

        state = self._listing_state(listing_id)
        self.assertEqual((state["rented"], state["available"], state["status"]), (2, 3, "Pending"))
        public = self.customer.get("/api/listings", params={"category": "drums"}).json()
        self.assertEqual([item["available"] for item in public], [3])

    def test_full_checkout_marks_listing_requested(self):
        listing_id = self._listing(stock=5)
        self.assertEqual(self._checkout(listing_id, 5).status_code, 201)

        state = self._listing_state(listing_id)
        self.assertEqual((state["rented"], state["status"]), (5, "Requested"))
        self.assertEqual(self.customer.get("/api/listings", params={"category": "drums"}).json(), [])

        again = self._checkout(listing_id, 1)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(self._request_count(), 1)
        self.assertEqual(len(self._stored_documents()), 1)

        event_type, _, payload = self.notifier.events[-1]
        self.assertEqual(event_type, "RequestCreated")
        self.assertEqual(payload["status"], "Requested")

    def test_over_quantity_is_rejected_without_side_effects(self):
        listing_id = self._listing(stock=3)
        response = self._checkout(listing_id, 4)
        self.assertEqual(response.status_code, 409)
        self.assertIn("exceeds available stock", response.json()["detail"])

        state = self._listing_state(listing_id)
        self.assertEqual((state["rented"], state["status"]), (0, "Pending"))
        self.assertEqual(self._request_count(), 0)
        self.assertEqual(self._stored_documents(), [])

    def test_checkout_validation(self):
        listing_id = self._listing(stock=3)
        self.assertEqual(self._checkout(listing_id, 0).status_code, 400)
        self.assertEqual(self._checkout(listing_id, "two").status_code, 400)
        self.assertEqual(self._checkout(listing_id, 1, hours=0).status_code, 400)
        self.assertEqual(self._checkout(listing_id, 1, document=None).status_code, 400)
        self.assertEqual(self._checkout(listing_id, 1, document=("id.exe", b"MZ", "application/x-msdownload")).status_code, 400)
        self.assertEqual(self._checkout(9999, 1).status_code, 404)
        self.assertEqual(self._listing_state(listing_id)["rented"], 0)
        self.assertEqual(self._stored_documents(), [])

    def test_oversized_quantities_and_totals_are_rejected(self):
        listing_id = self._listing(stock=3, price="99999999.99")
        self.assertEqual(self._checkout(listing_id, "99999999999999999999").status_code, 400)
        self.assertEqual(self._checkout(listing_id, 1, hours="99999999999999999999").status_code, 400)
        self.assertEqual(self._checkout(listing_id, 1, hours=24 * 365 + 1).status_code, 400)

        total = self._checkout(listing_id, 3, hours=24 * 365)
        self.assertEqual(total.status_code, 400)
        self.assertIn("Total price", total.json()["detail"])

        self.assertEqual(self._listing_state(listing_id)["rented"], 0)
        self.assertEqual(self._request_count(), 0)
        self.assertEqual(self._stored_documents(), [])

    def test_locked_notification_store_does_not_delay_checkout(self):
        outbox_path = Path(tempfile.mkdtemp(prefix="outbox-")) / "outbox.db"
        notifier = QueuedNotifier(connect_notifier(f"sqlite+pysqlite:///{outbox_path}", retry_seconds=60))
        del app_module.app.dependency_overrides[app_module.get_notifier]
        app_module.app.state.notifier = notifier
        try:
            listing_id = self._listing(stock=1)
            lock = sqlite3.connect(str(outbox_path), isolation_level=None)
            try:
                lock.execute("BEGIN EXCLUSIVE")
                started = time.monotonic()
                response = self._checkout(listing_id, 1)
                elapsed = time.monotonic() - started
            finally:
                lock.execute("ROLLBACK")
                lock.close()
        finally:
            notifier.close(timeout=10)
            app_module.app.state.notifier = None

        self.assertEqual(response.status_code, 201)
        self.assertLess(elapsed, 2.0)
        self.assertEqual(self._listing_state(listing_id)["status"], "Requested")

    def test_idempotent_replay_returns_original_request(self):
        listing_id = self._listing(stock=5)
        headers = {"Idempotency-Key": "order-42"}
        first = self._checkout(listing_id, 2, headers=headers)
        second = self._checkout(listing_id, 2, headers=headers)
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(first.json()["request"]["requestID"], second.json()["request"]["requestID"])
        self.assertEqual(self._listing_state(listing_id)["rented"], 2)
        self.assertEqual(self._request_count(), 1)

        other_listing = self._listing(stock=5)
        reused = self._checkout(other_listing, 1, headers=headers)
        self.assertEqual(reused.status_code, 409)

    def test_cancel_and_fulfil_release_units(self):
        listing_id = self._listing(stock=2)
        first = self._checkout(listing_id, 1).json()["request"]["requestID"]
        second = self._checkout(listing_id, 1).json()["request"]["requestID"]
        self.assertEqual(self._listing_state(listing_id)["status"], "Requested")

        requests = self.owner.get("/api/requests", params={"listingID": listing_id}).json()
        self.assertEqual([item["requestID"] for item in requests], [first, second])

        cancelled = self.owner.post(f"/api/requests/{first}/cancel")
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["status"], "Cancelled")
        state = self._listing_state(listing_id)
        self.assertEqual((state["rented"], state["status"]), (1, "Pending"))

        fulfilled = self.owner.post(f"/api/requests/{second}/fulfil")
        self.assertEqual(fulfilled.status_code, 200)
        state = self._listing_state(listing_id)
        self.assertEqual((state["rented"], state["available"], state["status"]), (0, 2, "Pending"))

        self.assertEqual(self.owner.post(f"/api/requests/{first}/fulfil").status_code, 409)
        self.assertEqual(self.owner.post("/api/requests/9999/cancel").status_code, 404)
        self.assertIn("RequestCancelled", [event[0] for event in self.notifier.events])

    def test_other_renter_cannot_close_requests(self):
        listing_id = self._listing(stock=2)
        request_id = self._checkout(listing_id, 1).json()["request"]["requestID"]

        intruder = TestClient(app_module.app)
        intruder.post(
            "/api/renters",
            json={
                "email": "intruder@example.com",
                "password": "correct-horse",
                "entityName": "Other Shop",
                "pocName": "Someone",
                "phoneNumber": "9000000000",
                "location": "Delhi",
            },
        )
        intruder.post("/api/sessions", json={"email": "intruder@example.com", "password": "correct-horse"})
        self.assertEqual(intruder.post(f"/api/requests/{request_id}/cancel").status_code, 403)
        self.assertEqual(intruder.get("/api/requests").json(), [])
        self.assertEqual(self._listing_state(listing_id)["rented"], 1)

    def test_stock_cannot_drop_below_rented(self):
        listing_id = self._listing(stock=5)
        self._checkout(listing_id, 3)
        response = self.owner.put(
            f"/api/listings/{listing_id}",
            data={"category": "drums", "brand": "Tama", "model": "Imperialstar", "stock": "2"},
        )
        self.assertEqual(response.status_code, 409)

        exact = self.owner.put(
            f"/api/listings/{listing_id}",
            data={"category": "drums", "brand": "Tama", "model": "Imperialstar", "stock": "3"},
        )
        self.assertEqual(exact.status_code, 200)
        self.assertEqual(exact.json()["listing"]["status"], "Requested")

    def test_failing_notifier_does_not_change_outcome(self):
        app_module.app.dependency_overrides[app_module.get_notifier] = lambda: ExplodingNotifier()
        listing_id = self._listing(stock=1)
        response = self._checkout(listing_id, 1)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self._listing_state(listing_id)["status"], "Requested")

    def test_pending_notifications_are_scoped_to_owner(self):
        outbox = OutboxNotifier(SessionLocalMarket, retry_seconds=5)
        app_module.app.dependency_overrides[app_module.get_notifier] = lambda: outbox
        listing_id = self._listing(stock=1)
        self._checkout(listing_id, 1)

        pending = self.owner.get("/api/notifications/pending").json()
        self.assertEqual([item["type"] for item in pending], ["ListingCreated", "RequestCreated"])
        self.assertEqual(pending[1]["payload"]["status"], "Requested")

    def test_stale_read_conflict_discards_uploaded_document(self):
        listing_id = self._listing(stock=2)
        document = UploadedFile(filename="id.pdf", content_type="application/pdf", content=b"%PDF-1.4")
        form = CheckoutForm(
            customerName="Late Customer",
            contactNumber="9123456789",
            rentalDurationHours="1",
            quantity="2",
            identityDocument=document,
        )

        stale = SessionLocalMarket()
        try:
            stale.get(RentalListing, listing_id)
            with SessionLocalMarket() as winner:
                checkout(winner, listing_id, form, self.store)

            with self.assertRaises(Conflict):
                checkout(stale, listing_id, form, self.store)
        finally:
            stale.close()

        self.assertEqual(len(self._stored_documents()), 1)
        self.assertEqual(self._request_count(), 1)
        self.assertEqual(self._listing_state(listing_id)["rented"], 2)


class ConcurrentCheckoutTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine_market)
        Base.metadata.create_all(bind=engine_market)
        self.store = FileStore(Path(tempfile.mkdtemp(prefix="uploads-")))
        self.owner = TestClient(app_module.app)
        self.owner.post(
            "/api/renters",
            json={
                "email": "owner@example.com",
                "password": "correct-horse",
                "entityName": "Beat Street Rentals",
                "pocName": "Asha Rao",
                "phoneNumber": "9876543210",
                "location": "Pune",
            },
        )
        self.owner.post("/api/sessions", json={"email": "owner@example.com", "password": "correct-horse"})

    def test_parallel_checkouts_never_oversell(self):
        stock = 3
        attempts = 8
        listing_id = self.owner.post(
            "/api/listings",
            data={"category": "guitars", "brand": "Fender", "model": "Telecaster", "stock": str(stock)},
        ).json()["listing"]["listingID"]

        barrier = threading.Barrier(attempts)
        outcomes = []
        lock = threading.Lock()

        def attempt(index):
            form = CheckoutForm(
                customerName=f"Customer {index}",
                contactNumber="9123456789",
                rentalDurationHours="1",
                quantity="1",
                identityDocument=UploadedFile(filename="id.png", content_type="image/png", content=b"\x89PNG"),
            )
            db = SessionLocalMarket()
            try:
                barrier.wait()
                checkout(db, listing_id, form, self.store)
                result = "ok"
            except Conflict:
                result = "conflict"
            finally:
                db.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(outcomes.count("ok"), stock)
        self.assertEqual(outcomes.count("conflict"), attempts - stock)

        listing = self.owner.get(f"/api/listings/{listing_id}").json()
        self.assertEqual((listing["rented"], listing["status"]), (stock, "Requested"))
        with SessionLocalMarket() as db:
            self.assertEqual(db.query(RentalRequest).count(), stock)


if __name__ == "__main__":
    unittest.main()
