from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.market_models import Renter
from schemas.listings import UploadedFile
from schemas.renters import RegisterRenterRequest
from services.audit_service import log_audit
from services.errors import DuplicateKey, NotFound, ValidationError
from services.storage_service import IMAGE_CONTENT_TYPES, FileStore, UploadBatch, validate_upload


MIN_PASSWORD_LENGTH = 8
PHONE_PATTERN = re.compile(r"^\d{10}$")


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def find_renter_by_email(db: Session, email: str) -> Renter | None:
    return db.execute(
        select(Renter).where(func.lower(Renter.Email) == normalize_email(email))
    ).scalars().first()


def register_renter(db: Session, payload: RegisterRenterRequest) -> Renter:
    email = normalize_email(payload.email)
    entity_name = payload.entityName.strip()
    poc_name = payload.pocName.strip()
    phone_number = payload.phoneNumber.strip()
    location = payload.location.strip()

    if not email or "@" not in email:
        raise ValidationError("A valid email address is required.")
    if not entity_name or not poc_name or not location:
        raise ValidationError("Entity name, contact person and location are required.")
    if not PHONE_PATTERN.fullmatch(phone_number):
        raise ValidationError("Phone number must be a 10-digit number.")
    if len(payload.password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if find_renter_by_email(db, email):
        raise DuplicateKey("Email is already registered.")

    salt = secrets.token_hex(16)
    renter = Renter(
        Email=email,
        EntityName=entity_name,
        PocName=poc_name,
        PhoneNumber=phone_number,
        Location=location,
        PasswordSalt=salt,
        PasswordHash=_password_hash(payload.password, salt),
        CreatedDate=datetime.now(),
    )
    db.add(renter)
    try:
        db.flush()
        log_audit(db, "Renter", renter.RenterID, "Register", f"email={email}", renter_id=renter.RenterID)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateKey("Email is already registered.") from exc
    db.refresh(renter)
    return renter


def authenticate(db: Session, email: str | None, password: str | None) -> Renter | None:
    renter = find_renter_by_email(db, email or "")
    if not renter or not password:
        return None
    candidate = _password_hash(password, renter.PasswordSalt)
    if not hmac.compare_digest(candidate, renter.PasswordHash):
        return None
    return renter


def set_password(db: Session, renter: Renter, password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    renter.PasswordSalt = salt
    renter.PasswordHash = _password_hash(password, salt)


def set_profile_image(db: Session, renter_id: int, upload: UploadedFile | None, store: FileStore) -> Renter:
    if upload is None or not (upload.filename or upload.content):
        raise ValidationError("Please upload a profile image.")
    validate_upload(upload, IMAGE_CONTENT_TYPES, "Profile image")
    renter = db.get(Renter, renter_id)
    if not renter:
        raise NotFound("Renter not found")

    previous = renter.ProfileImagePath
    batch = UploadBatch(store)
    try:
        renter.ProfileImagePath = batch.save(upload, "profile-images")
        log_audit(db, "Renter", renter.RenterID, "SetProfileImage", renter.ProfileImagePath, renter_id=renter.RenterID)
        db.commit()
    except Exception:
        db.rollback()
        batch.discard()
        raise

    db.refresh(renter)
    if previous:
        store.remove([previous])
    return renter


def serialize_renter(renter: Renter) -> dict[str, Any]:
    return {
        "renterID": renter.RenterID,
        "email": renter.Email,
        "entityName": renter.EntityName,
        "pocName": renter.PocName,
        "phoneNumber": renter.PhoneNumber,
        "location": renter.Location,
        "profileImage": renter.ProfileImagePath,
        "createdDate": renter.CreatedDate,
    }
