import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from db.deps import get_market_db
from db.session import RENTAL_MARKET_DB_URL, SessionLocalMarket, init_db
from schemas.listings import ListingForm, UploadedFile
from schemas.renters import LoginRequest, RegisterRenterRequest
from schemas.requests import CheckoutForm, CustomerInfoForm
from services.audit_service import log_audit
from services.errors import InternalError, MarketError, Unauthorized
from services.errors import ValidationError as InputError
from services.listing_service import (
    category_summary,
    create_listing,
    get_owned_listing,
    list_by_category,
    list_by_owner,
    serialize_listing,
    update_listing,
)
from services.notification_service import (
    Notifier,
    NullNotifier,
    QueuedNotifier,
    connect_notifier,
    list_pending_notifications,
)
from services.renter_service import authenticate, normalize_email, register_renter, serialize_renter, set_profile_image
from services.request_service import cancel_request, checkout, fulfil_request, list_requests, serialize_request
from services.session_service import (
    SESSION_TTL_SECONDS,
    create_session,
    get_session,
    principal_for,
    purge_expired_sessions,
    remove_session,
)
from services.storage_service import MAX_UPLOAD_BYTES, UPLOADS_DIR, FileStore, default_store
from services.verification_service import (
    IdentityVerifier,
    MockIdentityVerifier,
    serialize_customer_info,
    submit_customer_info,
)

AUTH_LOGGER = logging.getLogger("rental_market.auth")
LOGGER = logging.getLogger("rental_market.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


NOTIFICATIONS_ENABLED = _env_flag("NOTIFICATIONS_ENABLED", "true")
NOTIFICATIONS_DB_URL = (os.environ.get("NOTIFICATIONS_DB_URL") or RENTAL_MARKET_DB_URL).strip()
NOTIFICATIONS_RETRY_SECONDS = float(os.environ.get("NOTIFICATIONS_RETRY_SECONDS") or "30")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    notifier = QueuedNotifier(
        connect_notifier(
            NOTIFICATIONS_DB_URL if NOTIFICATIONS_ENABLED else None,
            NOTIFICATIONS_RETRY_SECONDS,
        )
    )
    app.state.notifier = notifier
    db = SessionLocalMarket()
    try:
        purged = purge_expired_sessions(db)
        if purged:
            LOGGER.info("Purged %s expired sessions", purged)
    finally:
        db.close()
    yield
    notifier.close()


app = FastAPI(title="Rental Market API", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=os.environ["SESSION_SIGNING_SECRET"].strip(),
    session_cookie="rental_market_session",
    max_age=SESSION_TTL_SECONDS,
    same_site="lax",
    https_only=False,
)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    LOGGER.error("%s %s store error: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Store error."})


def get_notifier(request: Request) -> Notifier:
    return getattr(request.app.state, "notifier", None) or NullNotifier()


def get_file_store() -> FileStore:
    return default_store


def get_identity_verifier() -> IdentityVerifier:
    return MockIdentityVerifier()


def _audit_auth_event(db: Session, *, action: str, details: str, renter_id: int | None = None) -> None:
    try:
        log_audit(db, "Auth", int(renter_id or 0), action, details, renter_id=renter_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUTH_LOGGER.warning("Could not record auth event %s", action)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _to_uploaded(file: UploadFile | None) -> UploadedFile | None:
    if file is None:
        return None
    # One byte past the cap is enough for validate_upload to reject it.
    content = file.file.read(MAX_UPLOAD_BYTES + 1)
    if not file.filename and not content:
        return None
    return UploadedFile(filename=file.filename or "", content_type=file.content_type or "", content=content)


def _validated(schema: type[BaseModel], fields: dict):
    # Blank form fields count as omitted so optional ones fall back to their defaults.
    present = {key: value for key, value in fields.items() if value is not None and value != ""}
    try:
        return schema.model_validate(present)
    except ValidationError as exc:
        invalid = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise InputError(f"Missing or invalid fields: {', '.join(invalid)}.") from exc


def _listing_form(
    category: str | None,
    subcategory: str | None,
    brand: str | None,
    model: str | None,
    stock: str | None,
    price_per_hour: str | None,
    images: list[UploadFile] | None,
) -> ListingForm:
    uploaded = [item for item in (_to_uploaded(image) for image in images or []) if item is not None]
    return _validated(
        ListingForm,
        {
            "category": category,
            "subcategory": subcategory,
            "brand": brand,
            "model": model,
            "stock": stock,
            "pricePerHour": price_per_hour,
            "images": uploaded,
        },
    )


def _get_active_session(request: Request, db: Session, session_token: str | None) -> dict | None:
    cookie_token = request.session.get("token")
    if cookie_token:
        principal = get_session(db, cookie_token)
        if principal is not None:
            return principal
        request.session.pop("token", None)
    return get_session(db, session_token)


def _require_session_or_401(request: Request, db: Session, session_token: str | None) -> dict:
    session = _get_active_session(request, db, session_token)
    if not session:
        raise Unauthorized("Unauthorized. Please log in.")
    return session


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_market_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/renters", status_code=201)
def register(payload: dict, db: Session = Depends(get_market_db)):
    parsed = _validated(RegisterRenterRequest, payload)
    renter = register_renter(db, parsed)
    return {"message": "Renter registered successfully", "renter": serialize_renter(renter)}


@app.put("/api/renters/profile-image")
def upload_profile_image(
    request: Request,
    profileImage: Optional[UploadFile] = File(None),
    db: Session = Depends(get_market_db),
    store: FileStore = Depends(get_file_store),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    renter = set_profile_image(db, int(session["renterID"]), _to_uploaded(profileImage), store)
    return {"message": "Profile image updated", "renter": serialize_renter(renter)}


@app.post("/api/sessions")
def login(payload: dict, request: Request, db: Session = Depends(get_market_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = LoginRequest.model_validate(payload)
    except ValidationError as exc:
        raise InputError("Invalid login request.") from exc

    email = normalize_email(parsed.email)
    if not email or not parsed.password:
        raise InputError("Email and password are required.")

    renter = authenticate(db, email, parsed.password)
    if not renter:
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} email={email}")
        AUTH_LOGGER.warning("Login failed ip=%s email=%s", client_ip, email)
        raise Unauthorized("Invalid email or password.")

    token = create_session(db, renter)
    request.session["token"] = token
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip}", renter_id=renter.RenterID)
    AUTH_LOGGER.info("Login success ip=%s renter_id=%s", client_ip, renter.RenterID)
    return {"message": "Login successful", "sessionToken": token, "user": principal_for(renter)}


@app.delete("/api/sessions")
def logout(
    request: Request,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    tokens = {token for token in (request.session.get("token"), x_session_token) if token}
    request.session.clear()
    try:
        for token in tokens:
            remove_session(db, token)
    except SQLAlchemyError as exc:
        db.rollback()
        raise InternalError("Logout failed.") from exc
    return {"message": "Logout successful"}


@app.get("/api/sessions/current")
def check_session(
    request: Request,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _get_active_session(request, db, x_session_token)
    if not session:
        return {"loggedIn": False}
    return {"loggedIn": True, "renterID": session["renterID"], "entityName": session["entityName"]}


@app.post("/api/listings", status_code=201)
def create_listing_route(
    request: Request,
    category: Optional[str] = Form(None),
    subcategory: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    pricePerHour: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_market_db),
    store: FileStore = Depends(get_file_store),
    notifier: Notifier = Depends(get_notifier),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    form = _listing_form(category, subcategory, brand, model, stock, pricePerHour, images)
    listing = create_listing(db, session, form, store, notifier)
    return {"message": "Listing created successfully", "listing": serialize_listing(listing)}


@app.get("/api/listings")
def get_listings(
    request: Request,
    category: Optional[str] = Query(None),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    if category is not None:
        return [serialize_listing(listing) for listing in list_by_category(db, category)]
    session = _require_session_or_401(request, db, x_session_token)
    return [serialize_listing(listing) for listing in list_by_owner(db, session)]


@app.get("/api/listings/summary")
def get_listing_summary(
    request: Request,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return category_summary(db, session)


@app.get("/api/listings/{listing_id}")
def get_listing(
    request: Request,
    listing_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return serialize_listing(get_owned_listing(db, session, listing_id))


@app.put("/api/listings/{listing_id}")
def update_listing_route(
    request: Request,
    listing_id: int,
    category: Optional[str] = Form(None),
    subcategory: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    pricePerHour: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_market_db),
    store: FileStore = Depends(get_file_store),
    notifier: Notifier = Depends(get_notifier),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    form = _listing_form(category, subcategory, brand, model, stock, pricePerHour, images)
    listing = update_listing(db, session, listing_id, form, store, notifier)
    return {"message": "Listing updated successfully", "listing": serialize_listing(listing)}


@app.post("/api/listings/{listing_id}/requests", status_code=201)
def checkout_route(
    listing_id: int,
    response: Response,
    customerName: Optional[str] = Form(None),
    contactNumber: Optional[str] = Form(None),
    rentalDurationHours: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    identityDocument: Optional[UploadFile] = File(None),
    db: Session = Depends(get_market_db),
    store: FileStore = Depends(get_file_store),
    notifier: Notifier = Depends(get_notifier),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    form = _validated(
        CheckoutForm,
        {
            "customerName": customerName,
            "contactNumber": contactNumber,
            "rentalDurationHours": rentalDurationHours,
            "quantity": quantity,
            "identityDocument": _to_uploaded(identityDocument),
            "idempotencyKey": idempotency_key,
        },
    )
    rental_request, created = checkout(db, listing_id, form, store, notifier)
    if not created:
        response.status_code = 200
    return {
        "message": "Rental request submitted successfully" if created else "Rental request already submitted",
        "request": serialize_request(rental_request),
    }


@app.get("/api/requests")
def get_requests(
    request: Request,
    listing_id: Optional[int] = Query(None, alias="listingID"),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return [serialize_request(item) for item in list_requests(db, session, listing_id)]


@app.post("/api/requests/{request_id}/fulfil")
def fulfil_request_route(
    request: Request,
    request_id: int,
    db: Session = Depends(get_market_db),
    notifier: Notifier = Depends(get_notifier),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return serialize_request(fulfil_request(db, session, request_id, notifier))


@app.post("/api/requests/{request_id}/cancel")
def cancel_request_route(
    request: Request,
    request_id: int,
    db: Session = Depends(get_market_db),
    notifier: Notifier = Depends(get_notifier),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return serialize_request(cancel_request(db, session, request_id, notifier))


@app.post("/api/customer-info", status_code=201)
def submit_customer_info_route(
    request: Request,
    governmentIdNumber: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    contactNumber: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    document: Optional[UploadFile] = File(None),
    db: Session = Depends(get_market_db),
    store: FileStore = Depends(get_file_store),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    form = _validated(
        CustomerInfoForm,
        {
            "governmentIdNumber": governmentIdNumber,
            "name": name,
            "contactNumber": contactNumber,
            "location": location,
            "document": _to_uploaded(document),
        },
    )
    record = submit_customer_info(db, session, form, verifier, store)
    return {"message": "Customer information submitted successfully", "customer": serialize_customer_info(record)}


@app.get("/api/notifications/pending")
def get_pending_notifications(
    request: Request,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, db, x_session_token)
    return list_pending_notifications(db, int(session["renterID"]))


app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR), check_dir=False), name="uploads")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
