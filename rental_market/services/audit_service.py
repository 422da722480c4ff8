from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from models.market_models import AuditLog


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    renter_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            RenterID=renter_id,
            CreatedAt=datetime.now(),
        )
    )
