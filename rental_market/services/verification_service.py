from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.market_models import CustomerInfo
from schemas.requests import CustomerInfoForm
from services.audit_service import log_audit
from services.errors import DuplicateKey, ValidationError
from services.listing_service import require_principal
from services.storage_service import DOCUMENT_CONTENT_TYPES, FileStore, UploadBatch, validate_upload


@dataclass
class VerificationResult:
    verified: bool
    status: str
    reason: str | None = None


class IdentityVerifier(Protocol):
    def verify(self, government_id_number: str, name: str, contact_number: str, document_path: str) -> VerificationResult:
        ...


class MockIdentityVerifier:
    """Placeholder check against one fixed reference identity.

    This performs no document inspection and must not be treated as verification.
    Swap in a real IdentityVerifier through the app dependency to go beyond it.
    """

    reference_name = "John Doe"
    reference_contact = "9876543210"

    def verify(self, government_id_number: str, name: str, contact_number: str, document_path: str) -> VerificationResult:
        if name != self.reference_name or contact_number != self.reference_contact:
            return VerificationResult(False, "Rejected", "Name or contact number does not match the identity document.")
        return VerificationResult(True, "MockVerified")


def submit_customer_info(
    db: Session,
    principal: dict[str, Any] | None,
    form: CustomerInfoForm,
    verifier: IdentityVerifier,
    store: FileStore,
) -> CustomerInfo:
    principal = require_principal(principal)
    document = form.document
    if not (document.filename or document.content):
        raise ValidationError("Please upload an identity document.")
    validate_upload(document, DOCUMENT_CONTENT_TYPES, "Identity document")
    government_id = form.governmentIdNumber

    existing = db.execute(
        select(CustomerInfo.CustomerInfoID).where(CustomerInfo.GovernmentIdNumber == government_id)
    ).first()
    if existing:
        raise DuplicateKey("Customer information for this identity number was already submitted.")

    batch = UploadBatch(store)
    try:
        document_path = batch.save(document, "documents")
        result = verifier.verify(government_id, form.name, form.contactNumber, document_path)
        if not result.verified:
            raise ValidationError(result.reason or "Identity could not be verified.")

        record = CustomerInfo(
            GovernmentIdNumber=government_id,
            Name=form.name,
            ContactNumber=form.contactNumber,
            Location=form.location,
            DocumentPath=document_path,
            VerificationStatus=result.status,
            SubmittedBy=int(principal["renterID"]),
            CreatedDate=datetime.now(),
        )
        db.add(record)
        db.flush()
        log_audit(db, "CustomerInfo", record.CustomerInfoID, "Submit", result.status, renter_id=record.SubmittedBy)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        batch.discard()
        raise DuplicateKey("Customer information for this identity number was already submitted.") from exc
    except Exception:
        db.rollback()
        batch.discard()
        raise

    db.refresh(record)
    return record


def serialize_customer_info(record: CustomerInfo) -> dict[str, Any]:
    return {
        "customerInfoID": record.CustomerInfoID,
        "name": record.Name,
        "contactNumber": record.ContactNumber,
        "location": record.Location,
        "document": record.DocumentPath,
        "verificationStatus": record.VerificationStatus,
        "createdDate": record.CreatedDate,
    }
