from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, selectinload

from models.market_models import RentalListing
from schemas.listings import ListingForm, UploadedFile
from services.audit_service import log_audit
from services.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from services.notification_service import Notifier, notify
from services.storage_service import IMAGE_CONTENT_TYPES, FileStore, UploadBatch, validate_upload


KNOWN_CATEGORIES = ("drums", "guitars", "keyboards", "equipments", "others")
ALL_CATEGORIES = "all"
MAX_LISTING_IMAGES = 3

STATUS_PENDING = "Pending"
STATUS_REQUESTED = "Requested"

LOGGER = logging.getLogger("rental_market.inventory")


def require_principal(principal: dict[str, Any] | None) -> dict[str, Any]:
    if not principal or not principal.get("renterID"):
        raise Unauthorized("Unauthorized. Please log in.")
    return principal


def normalize_category(raw: str | None, allow_all: bool = False) -> str:
    value = (raw or "").strip().lower()
    if not value:
        raise ValidationError("Category is required.")
    if allow_all and value == ALL_CATEGORIES:
        return value
    if value not in KNOWN_CATEGORIES:
        raise ValidationError(f"Unknown category '{raw}'. Expected one of: {', '.join(KNOWN_CATEGORIES)}.")
    return value


def _images_of(form: ListingForm) -> list[UploadedFile]:
    images = [image for image in (form.images or []) if image.filename or image.content]
    if len(images) > MAX_LISTING_IMAGES:
        raise ValidationError(f"At most {MAX_LISTING_IMAGES} images can be uploaded per listing.")
    for index, image in enumerate(images, start=1):
        validate_upload(image, IMAGE_CONTENT_TYPES, f"Image {index}")
    return images


def validate_listing_form(form: ListingForm) -> dict[str, Any]:
    return {
        "Category": normalize_category(form.category),
        "Subcategory": form.subcategory or None,
        "Brand": form.brand,
        "Model": form.model,
        "Stock": form.stock,
        "PricePerHour": form.pricePerHour.quantize(Decimal("0.01")),
        "images": _images_of(form),
    }


def image_paths_of(listing: RentalListing) -> list[str]:
    if not listing.ImagePaths:
        return []
    try:
        parsed = json.loads(listing.ImagePaths)
    except (TypeError, ValueError):
        return []
    return [str(item) for item in parsed] if isinstance(parsed, list) else []


def available_units(listing: RentalListing) -> int:
    return max(0, int(listing.Stock or 0) - int(listing.Rented or 0))


def serialize_listing(listing: RentalListing) -> dict[str, Any]:
    return {
        "listingID": listing.ListingID,
        "renterID": listing.RenterID,
        "entityName": listing.Renter.EntityName if listing.Renter else None,
        "category": listing.Category,
        "subcategory": listing.Subcategory,
        "brand": listing.Brand,
        "model": listing.Model,
        "pricePerHour": float(listing.PricePerHour or 0),
        "stock": int(listing.Stock or 0),
        "rented": int(listing.Rented or 0),
        "available": available_units(listing),
        "status": listing.DeliveryStatus,
        "images": image_paths_of(listing),
        "createdDate": listing.CreatedDate,
        "updatedDate": listing.UpdatedDate,
    }


def _listing_event(listing: RentalListing) -> dict[str, Any]:
    return {
        "listingId": listing.ListingID,
        "renterId": listing.RenterID,
        "model": listing.Model,
        "status": listing.DeliveryStatus,
    }


def create_listing(
    db: Session,
    principal: dict[str, Any] | None,
    form: ListingForm,
    store: FileStore,
    notifier: Notifier | None = None,
) -> RentalListing:
    principal = require_principal(principal)
    fields = validate_listing_form(form)
    images = fields.pop("images")

    batch = UploadBatch(store)
    try:
        image_paths = [batch.save(image, "listings") for image in images]
        listing = RentalListing(
            RenterID=int(principal["renterID"]),
            Rented=0,
            DeliveryStatus=STATUS_PENDING,
            ImagePaths=json.dumps(image_paths),
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
            **fields,
        )
        db.add(listing)
        db.flush()
        log_audit(
            db,
            "Listing",
            listing.ListingID,
            "CreateListing",
            f"{listing.Brand} {listing.Model} stock={listing.Stock}",
            renter_id=listing.RenterID,
        )
        db.commit()
    except Exception:
        db.rollback()
        batch.discard()
        raise

    db.refresh(listing)
    LOGGER.info("Listing %s created by renter %s", listing.ListingID, listing.RenterID)
    notify(notifier, "ListingCreated", listing.ListingID, _listing_event(listing))
    return listing


def get_owned_listing(db: Session, principal: dict[str, Any] | None, listing_id: int) -> RentalListing:
    principal = require_principal(principal)
    listing = db.get(RentalListing, listing_id)
    if not listing:
        raise NotFound("Listing not found")
    if listing.RenterID != int(principal["renterID"]):
        raise Forbidden("This listing belongs to another renter.")
    return listing


def update_listing(
    db: Session,
    principal: dict[str, Any] | None,
    listing_id: int,
    form: ListingForm,
    store: FileStore,
    notifier: Notifier | None = None,
) -> RentalListing:
    listing = get_owned_listing(db, principal, listing_id)
    fields = validate_listing_form(form)
    images = fields.pop("images")
    new_stock = fields["Stock"]
    if new_stock < int(listing.Rented or 0):
        raise Conflict(f"Stock cannot be lower than the {listing.Rented} units currently rented.")

    previous_images = image_paths_of(listing)
    batch = UploadBatch(store)
    try:
        values: dict[str, Any] = dict(fields)
        if images:
            values["ImagePaths"] = json.dumps([batch.save(image, "listings") for image in images])
        values["DeliveryStatus"] = case(
            (RentalListing.Rented >= new_stock, STATUS_REQUESTED),
            else_=STATUS_PENDING,
        )
        values["UpdatedDate"] = datetime.now()
        # Guarded against a checkout landing between the read above and this write.
        result = db.execute(
            update(RentalListing)
            .where(RentalListing.ListingID == listing_id)
            .where(RentalListing.Rented <= new_stock)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict("Stock cannot be lower than the units currently rented.")
        log_audit(db, "Listing", listing_id, "UpdateListing", f"stock={new_stock}", renter_id=listing.RenterID)
        db.commit()
    except Exception:
        db.rollback()
        batch.discard()
        raise

    db.refresh(listing)
    if images and previous_images:
        store.remove(previous_images)
    notify(notifier, "ListingUpdated", listing.ListingID, _listing_event(listing))
    return listing


def list_by_owner(db: Session, principal: dict[str, Any] | None) -> list[RentalListing]:
    principal = require_principal(principal)
    return list(
        db.execute(
            select(RentalListing)
            .options(selectinload(RentalListing.Renter))
            .where(RentalListing.RenterID == int(principal["renterID"]))
            .order_by(RentalListing.ListingID)
        ).scalars().all()
    )


def list_by_category(db: Session, category: str | None) -> list[RentalListing]:
    normalized = normalize_category(category, allow_all=True)
    stmt = (
        select(RentalListing)
        .options(selectinload(RentalListing.Renter))
        .where(RentalListing.DeliveryStatus == STATUS_PENDING)
        .where(RentalListing.Rented < RentalListing.Stock)
        .order_by(RentalListing.ListingID)
    )
    if normalized != ALL_CATEGORIES:
        stmt = stmt.where(RentalListing.Category == normalized)
    return list(db.execute(stmt).scalars().all())


def category_summary(db: Session, principal: dict[str, Any] | None) -> list[dict[str, Any]]:
    principal = require_principal(principal)
    rows = db.execute(
        select(
            RentalListing.Category,
            func.coalesce(func.sum(RentalListing.Stock), 0),
            func.coalesce(func.sum(RentalListing.Rented), 0),
        )
        .where(RentalListing.RenterID == int(principal["renterID"]))
        .group_by(RentalListing.Category)
    ).all()
    totals = {category: (int(stock), int(rented)) for category, stock, rented in rows}

    summary = []
    for category in KNOWN_CATEGORIES:
        total_items, rented_items = totals.get(category, (0, 0))
        summary.append(
            {
                "category": category,
                "totalItems": total_items,
                "rentedItems": rented_items,
                "availableItems": total_items - rented_items,
                "utilization": round(rented_items * 100 / total_items) if total_items else 0,
            }
        )
    return summary
