from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.market_models import RentalListing, RentalRequest
from schemas.requests import CheckoutForm
from services.audit_service import log_audit
from services.errors import Conflict, Forbidden, InternalError, NotFound, ValidationError
from services.listing_service import STATUS_PENDING, STATUS_REQUESTED, available_units, get_owned_listing, require_principal
from services.notification_service import Notifier, notify
from services.storage_service import DOCUMENT_CONTENT_TYPES, FileStore, UploadBatch, validate_upload


REQUEST_PENDING = "Pending"
REQUEST_FULFILLED = "Fulfilled"
REQUEST_CANCELLED = "Cancelled"
REQUEST_TRANSITIONS = {
    REQUEST_PENDING: {REQUEST_FULFILLED, REQUEST_CANCELLED},
    REQUEST_FULFILLED: set(),
    REQUEST_CANCELLED: set(),
}

# RentalRequests.TotalPrice is Numeric(12, 2).
MAX_TOTAL_PRICE = Decimal("9999999999.99")
LOGGER = logging.getLogger("rental_market.checkout")


def compute_total_price(price_per_hour: Decimal, quantity: int, duration_hours: int) -> Decimal:
    total = (Decimal(price_per_hour) * quantity * duration_hours).quantize(Decimal("0.01"))
    if total > MAX_TOTAL_PRICE:
        raise ValidationError("Total price is too large; reduce the quantity or rental duration.")
    return total


def serialize_request(rental_request: RentalRequest) -> dict[str, Any]:
    listing = rental_request.Listing
    return {
        "requestID": rental_request.RequestID,
        "listingID": rental_request.ListingID,
        "customerName": rental_request.CustomerName,
        "contactNumber": rental_request.ContactNumber,
        "identityDocument": rental_request.IdentityDocumentPath,
        "quantity": rental_request.Quantity,
        "rentalDurationHours": rental_request.DurationHours,
        "pricePerHour": float(rental_request.PricePerHour or 0),
        "totalPrice": float(rental_request.TotalPrice or 0),
        "status": rental_request.Status,
        "createdDate": rental_request.CreatedDate,
        "updatedDate": rental_request.UpdatedDate,
        "listing": {
            "listingID": listing.ListingID,
            "category": listing.Category,
            "brand": listing.Brand,
            "model": listing.Model,
            "status": listing.DeliveryStatus,
            "available": available_units(listing),
        } if listing else None,
    }


def _request_event(rental_request: RentalRequest, listing: RentalListing) -> dict[str, Any]:
    return {
        "requestId": rental_request.RequestID,
        "listingId": listing.ListingID,
        "renterId": listing.RenterID,
        "model": listing.Model,
        "status": listing.DeliveryStatus if rental_request.Status == REQUEST_PENDING else rental_request.Status,
    }


def _find_by_idempotency_key(db: Session, key: str) -> RentalRequest | None:
    return db.execute(
        select(RentalRequest).where(RentalRequest.IdempotencyKey == key)
    ).scalars().first()


def _replay(existing: RentalRequest, listing_id: int) -> RentalRequest:
    if existing.ListingID != listing_id:
        raise Conflict("Idempotency key was already used for another listing.")
    return existing


def checkout(
    db: Session,
    listing_id: int,
    form: CheckoutForm,
    store: FileStore,
    notifier: Notifier | None = None,
) -> tuple[RentalRequest, bool]:
    """Reserve units of a listing for a customer and record the request.

    Returns the request and whether it was created by this call; a repeated
    idempotency key hands back the original request without touching stock.
    """
    listing = db.get(RentalListing, listing_id)
    if not listing:
        raise NotFound("Listing not found")

    idempotency_key = form.idempotencyKey or None
    if idempotency_key:
        existing = _find_by_idempotency_key(db, idempotency_key)
        if existing:
            return _replay(existing, listing_id), False

    quantity = form.quantity
    duration_hours = form.rentalDurationHours
    document = form.identityDocument
    if not (document.filename or document.content):
        raise ValidationError("Please upload an identity verification document.")
    validate_upload(document, DOCUMENT_CONTENT_TYPES, "Identity document")

    available = available_units(listing)
    if quantity > available:
        raise Conflict(f"Requested quantity ({quantity}) exceeds available stock ({available}).")

    price_per_hour = Decimal(str(listing.PricePerHour or 0))
    total_price = compute_total_price(price_per_hour, quantity, duration_hours)
    batch = UploadBatch(store)
    try:
        document_path = batch.save(document, "documents")

        # Reserve and check availability in one statement; concurrent checkouts serialise on the row.
        reserved = db.execute(
            update(RentalListing)
            .where(RentalListing.ListingID == listing_id)
            .where(RentalListing.Rented + quantity <= RentalListing.Stock)
            .values(Rented=RentalListing.Rented + quantity, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if reserved.rowcount != 1:
            raise Conflict("Not enough units available for this listing.")
        db.execute(
            update(RentalListing)
            .where(RentalListing.ListingID == listing_id)
            .where(RentalListing.Rented >= RentalListing.Stock)
            .values(DeliveryStatus=STATUS_REQUESTED)
            .execution_options(synchronize_session=False)
        )

        rental_request = RentalRequest(
            ListingID=listing_id,
            CustomerName=form.customerName,
            ContactNumber=form.contactNumber,
            IdentityDocumentPath=document_path,
            Quantity=quantity,
            DurationHours=duration_hours,
            PricePerHour=price_per_hour,
            TotalPrice=total_price,
            Status=REQUEST_PENDING,
            IdempotencyKey=idempotency_key,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(rental_request)
        db.flush()
        log_audit(
            db,
            "RentalRequest",
            rental_request.RequestID,
            "Checkout",
            f"listing={listing_id} quantity={quantity} hours={duration_hours}",
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        batch.discard()
        if idempotency_key:
            existing = _find_by_idempotency_key(db, idempotency_key)
            if existing:
                return _replay(existing, listing_id), False
        raise Conflict("Request could not be recorded; please retry.") from exc
    except Exception:
        db.rollback()
        batch.discard()
        raise

    db.refresh(listing)
    db.refresh(rental_request)
    LOGGER.info(
        "Request %s reserved %s of listing %s (available now %s)",
        rental_request.RequestID,
        quantity,
        listing_id,
        available_units(listing),
    )
    notify(
        notifier,
        "RequestCreated",
        rental_request.RequestID,
        {
            "requestId": rental_request.RequestID,
            "listingId": listing.ListingID,
            "renterId": listing.RenterID,
            "model": listing.Model,
            "status": STATUS_REQUESTED,
        },
    )
    return rental_request, True


def get_owned_request(db: Session, principal: dict[str, Any] | None, request_id: int) -> RentalRequest:
    principal = require_principal(principal)
    rental_request = db.get(RentalRequest, request_id)
    if not rental_request:
        raise NotFound("Request not found")
    listing = db.get(RentalListing, rental_request.ListingID)
    if not listing or listing.RenterID != int(principal["renterID"]):
        raise Forbidden("This request belongs to another renter's listing.")
    return rental_request


def list_requests(db: Session, principal: dict[str, Any] | None, listing_id: int | None = None) -> list[RentalRequest]:
    principal = require_principal(principal)
    stmt = (
        select(RentalRequest)
        .join(RentalListing, RentalListing.ListingID == RentalRequest.ListingID)
        .options(selectinload(RentalRequest.Listing))
        .where(RentalListing.RenterID == int(principal["renterID"]))
        .order_by(RentalRequest.RequestID)
    )
    if listing_id is not None:
        get_owned_listing(db, principal, listing_id)
        stmt = stmt.where(RentalRequest.ListingID == listing_id)
    return list(db.execute(stmt).scalars().all())


def _close_request(
    db: Session,
    principal: dict[str, Any] | None,
    request_id: int,
    target_status: str,
    notifier: Notifier | None,
) -> RentalRequest:
    rental_request = get_owned_request(db, principal, request_id)
    if target_status not in REQUEST_TRANSITIONS.get(rental_request.Status, set()):
        raise Conflict(f"Invalid request transition: {rental_request.Status} -> {target_status}")

    listing_id = rental_request.ListingID
    quantity = int(rental_request.Quantity)
    try:
        closed = db.execute(
            update(RentalRequest)
            .where(RentalRequest.RequestID == request_id)
            .where(RentalRequest.Status == REQUEST_PENDING)
            .values(Status=target_status, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            raise Conflict("Request was already closed.")
        released = db.execute(
            update(RentalListing)
            .where(RentalListing.ListingID == listing_id)
            .where(RentalListing.Rented >= quantity)
            .values(Rented=RentalListing.Rented - quantity, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if released.rowcount != 1:
            raise InternalError(f"Reserved units of listing {listing_id} are out of sync.")
        db.execute(
            update(RentalListing)
            .where(RentalListing.ListingID == listing_id)
            .where(RentalListing.DeliveryStatus == STATUS_REQUESTED)
            .where(RentalListing.Rented < RentalListing.Stock)
            .values(DeliveryStatus=STATUS_PENDING)
            .execution_options(synchronize_session=False)
        )
        log_audit(
            db,
            "RentalRequest",
            request_id,
            target_status,
            f"released {quantity} of listing {listing_id}",
            renter_id=int(principal["renterID"]),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(rental_request)
    listing = db.get(RentalListing, listing_id)
    db.refresh(listing)
    LOGGER.info("Request %s %s; listing %s now %s", request_id, target_status.lower(), listing_id, listing.DeliveryStatus)
    notify(notifier, f"Request{target_status}", request_id, _request_event(rental_request, listing))
    return rental_request


def fulfil_request(
    db: Session,
    principal: dict[str, Any] | None,
    request_id: int,
    notifier: Notifier | None = None,
) -> RentalRequest:
    return _close_request(db, principal, request_id, REQUEST_FULFILLED, notifier)


def cancel_request(
    db: Session,
    principal: dict[str, Any] | None,
    request_id: int,
    notifier: Notifier | None = None,
) -> RentalRequest:
    return _close_request(db, principal, request_id, REQUEST_CANCELLED, notifier)
