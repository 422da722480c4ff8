from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session

from models.market_models import Renter, RenterSession


SESSION_TTL_SECONDS = 60 * 60 * 24


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _signature(session_id: str) -> str:
    digest = hmac.new(_SESSION_SECRET, session_id.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _session_id_from_token(token: str | None) -> str | None:
    if not token or "." not in token:
        return None
    session_id, supplied_sig = token.split(".", 1)
    try:
        expected_sig = _signature(session_id)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(expected_sig, supplied_sig):
        return None
    return session_id


def principal_for(renter: Renter) -> dict[str, Any]:
    return {
        "renterID": renter.RenterID,
        "entityName": renter.EntityName,
        "email": renter.Email,
    }


def create_session(db: Session, renter: Renter) -> str:
    session_id = secrets.token_urlsafe(32)
    db.add(
        RenterSession(
            SessionID=session_id,
            RenterID=renter.RenterID,
            ExpiresAt=datetime.now() + timedelta(seconds=SESSION_TTL_SECONDS),
            CreatedDate=datetime.now(),
        )
    )
    db.commit()
    return f"{session_id}.{_signature(session_id)}"


def get_session(db: Session, token: str | None) -> dict[str, Any] | None:
    session_id = _session_id_from_token(token)
    if not session_id:
        return None

    row = db.get(RenterSession, session_id)
    if not row:
        return None

    now = datetime.now()
    if row.ExpiresAt <= now:
        db.delete(row)
        db.commit()
        return None

    renter = db.get(Renter, row.RenterID)
    if not renter:
        return None

    # Sliding lifetime: every authenticated use pushes expiry out again.
    row.ExpiresAt = now + timedelta(seconds=SESSION_TTL_SECONDS)
    db.commit()
    return principal_for(renter)


def remove_session(db: Session, token: str | None) -> None:
    session_id = _session_id_from_token(token)
    if not session_id:
        return
    db.execute(delete(RenterSession).where(RenterSession.SessionID == session_id))
    db.commit()


def purge_expired_sessions(db: Session) -> int:
    result = db.execute(delete(RenterSession).where(RenterSession.ExpiresAt <= datetime.now()))
    db.commit()
    return int(result.rowcount or 0)
