import logging
import os
from datetime import date

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from db.deps import get_checkout_db
from db.session import init_db
from models.checkout_models import Profile
from schemas.auth import ApproveUserRequest, LoginRequest, SignupRequest
from schemas.inventory import CategoryDto, CreateItemDto, FavoriteToggleRequest, UpdateItemDto
from schemas.rentals import CartCheckoutRequest, ForceReturnRequest, ReturnRequest
from services.access_policy import authorize, normalize_role
from services.catalog_service import create_item, delete_item, get_item, list_items, serialize_item, update_item
from services.category_service import (
    add_category,
    list_categories,
    remove_category,
    rename_category,
    serialize_category,
)
from services.errors import AccessDenied, CheckoutError, NotAuthenticated, ValidationError
from services.favorite_service import list_favorites, toggle_favorite
from services.rental_service import (
    check_returnable,
    checkout_cart,
    count_holder_active,
    force_return,
    get_rental,
    group_by_holder,
    list_active_rentals,
    list_broken_history,
    list_holder_rentals,
    list_overdue_rentals,
    process_return,
    serialize_rental,
)
from services.storage_service import UPLOADS_DIR, discard_image, save_data_url_image, save_image
from services.user_access_service import (
    approve_profile,
    authenticate,
    create_session,
    get_session,
    list_waiting_profiles,
    register_profile,
    remove_session,
    serialize_profile,
)

LOGGER = logging.getLogger("equipment_checkout")
AUTH_LOGGER = logging.getLogger("equipment_checkout.auth")

app = FastAPI(title="Equipment Checkout")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="equipment_checkout_session",
    same_site="lax",
    https_only=False,
)

if _env_flag("CHECKOUT_AUTO_CREATE_SCHEMA", "true"):
    init_db()


@app.exception_handler(CheckoutError)
def handle_checkout_error(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        LOGGER.error("Request failed path=%s error=%s detail=%s", request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_checkout_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/signup")
def auth_signup(payload: SignupRequest, db: Session = Depends(get_checkout_db)):
    profile = register_profile(db, email=payload.email, password=payload.password, full_name=payload.fullName)
    return {
        "message": "Signup received. An administrator must approve the account before it can be used.",
        "user": serialize_profile(profile),
    }


@app.post("/api/auth/login")
def auth_login(payload: LoginRequest, request: Request, db: Session = Depends(get_checkout_db)):
    profile = authenticate(db, payload.email, payload.password)
    session_user = {
        "profileID": profile.ProfileID,
        "email": profile.Email,
        "fullName": profile.FullName,
        "role": normalize_role(profile.Role),
    }
    token = create_session(session_user)
    request.session["user"] = session_user
    return {"sessionToken": token, "user": serialize_profile(profile)}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_profile(request, x_session_token, db)
    payload = serialize_profile(profile)
    payload["activeRentalCount"] = count_holder_active(db, profile.ProfileID)
    return {"user": payload}


@app.get("/api/admin/waiting-users")
def get_waiting_users(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "approveUsers")
    return [serialize_profile(profile) for profile in list_waiting_profiles(db)]


@app.post("/api/admin/users/{profile_id}/approve")
def approve_user(
    request: Request,
    profile_id: int,
    payload: ApproveUserRequest,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_right(request, x_session_token, db, "approveUsers")
    profile = approve_profile(db, actor_role=actor.Role, profile_id=profile_id, new_role=payload.role)
    return serialize_profile(profile)


@app.get("/api/items")
def get_items(
    request: Request,
    category: str | None = Query(None),
    search: str | None = Query(None),
    sort: str | None = Query(None),
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "browse")
    return [serialize_item(item) for item in list_items(db, category=category, search=search, sort=sort)]


@app.get("/api/items/{item_id}")
def get_item_detail(
    request: Request,
    item_id: int,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "browse")
    return serialize_item(get_item(db, item_id))


@app.post("/api/items")
def create_item_route(
    request: Request,
    payload: CreateItemDto,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageItems")
    image_url = payload.imageUrl
    if payload.imageDataUrl:
        image_url = save_data_url_image("items", payload.imageDataUrl)
    item = create_item(
        db,
        name=payload.name,
        category=payload.category,
        total_qty=payload.totalQty,
        image_url=image_url,
    )
    return serialize_item(item)


@app.put("/api/items/{item_id}")
def update_item_route(
    request: Request,
    item_id: int,
    payload: UpdateItemDto,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageItems")
    item = update_item(db, item_id, payload.model_dump(exclude_unset=True))
    return serialize_item(item)


@app.delete("/api/items/{item_id}")
def delete_item_route(
    request: Request,
    item_id: int,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageItems")
    delete_item(db, item_id)
    return {"message": "Deleted"}


@app.post("/api/uploads/{bucket}")
def upload_image(
    request: Request,
    bucket: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "browse")
    url = save_image(bucket, file.file.read(), file.content_type)
    return {"url": url}


@app.get("/api/categories")
def get_categories(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "browse")
    return [serialize_category(category) for category in list_categories(db)]


@app.post("/api/categories")
def create_category(
    request: Request,
    payload: CategoryDto,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageCategories")
    return serialize_category(add_category(db, payload.name))


@app.put("/api/categories/{category_id}")
def update_category(
    request: Request,
    category_id: int,
    payload: CategoryDto,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageCategories")
    category, retagged = rename_category(db, category_id, payload.name)
    body = serialize_category(category)
    body["retaggedItems"] = retagged
    return body


@app.delete("/api/categories/{category_id}")
def delete_category(
    request: Request,
    category_id: int,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageCategories")
    remove_category(db, category_id)
    return {"message": "Deleted"}


@app.get("/api/favorites")
def get_favorites(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_right(request, x_session_token, db, "browse")
    return {"favorites": list_favorites(db, profile.ProfileID)}


@app.post("/api/favorites/toggle")
def toggle_favorite_route(
    request: Request,
    payload: FavoriteToggleRequest,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_right(request, x_session_token, db, "browse")
    return toggle_favorite(db, profile.ProfileID, payload.category)


@app.post("/api/checkout")
def checkout_route(
    request: Request,
    payload: CartCheckoutRequest,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_right(request, x_session_token, db, "checkout")
    if not payload.items:
        raise ValidationError("Cart is empty.")
    result = checkout_cart(
        db,
        holder_id=profile.ProfileID,
        lines=[line.model_dump() for line in payload.items],
    )
    status_code = {"ok": 200, "partial": 207, "failed": 409}[result.outcome]
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_payload()))


@app.get("/api/rentals/mine")
def get_my_rentals(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_right(request, x_session_token, db, "checkout")
    return [serialize_rental(rental) for rental in list_holder_rentals(db, profile.ProfileID)]


@app.post("/api/rentals/{rental_id}/return")
def return_rental(
    request: Request,
    rental_id: int,
    payload: ReturnRequest,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    profile = _require_right(request, x_session_token, db, "checkout")
    rental = get_rental(db, rental_id)
    if rental.ProfileID != profile.ProfileID:
        decision = authorize(profile.Role, "manageRentals")
        if not decision:
            AUTH_LOGGER.warning("Return denied rental_id=%s profile_id=%s", rental_id, profile.ProfileID)
            raise AccessDenied("Only the holder or a manager can return this rental.")

    # Reject bad returns before anything is written to the proof bucket.
    check_returnable(
        rental,
        return_qty=payload.returnQty,
        broken_qty=payload.brokenQty,
        expected_revision=payload.expectedRevision,
    )
    proof = payload.proofUrl
    stored_proof = None
    if payload.proofDataUrl:
        stored_proof = save_data_url_image("return-proofs", payload.proofDataUrl, prefix=str(rental_id))
        proof = stored_proof
    try:
        rental = process_return(
            db,
            rental_id,
            return_qty=payload.returnQty,
            broken_qty=payload.brokenQty,
            proof=proof,
            expected_revision=payload.expectedRevision,
        )
    except CheckoutError:
        discard_image(stored_proof)
        raise
    return serialize_rental(rental)


@app.get("/api/rentals/active")
def get_active_rentals(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageRentals")
    return [serialize_rental(rental) for rental in list_active_rentals(db)]


@app.get("/api/rentals/active/by-holder")
def get_active_rentals_by_holder(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageRentals")
    grouped = group_by_holder(list_active_rentals(db))
    return [
        {"holderName": holder_name, "count": len(rentals), "rentals": rentals}
        for holder_name, rentals in grouped.items()
    ]


@app.get("/api/rentals/overdue")
def get_overdue_rentals(
    request: Request,
    today: date | None = Query(None),
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageRentals")
    return [serialize_rental(rental, today) for rental in list_overdue_rentals(db, today)]


@app.get("/api/rentals/broken")
def get_broken_history(
    request: Request,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right(request, x_session_token, db, "manageRentals")
    return [serialize_rental(rental) for rental in list_broken_history(db)]


@app.post("/api/rentals/{rental_id}/force-return")
def force_return_rental(
    request: Request,
    rental_id: int,
    payload: ForceReturnRequest,
    db: Session = Depends(get_checkout_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_right(request, x_session_token, db, "manageRentals")
    rental = force_return(db, rental_id, broken=payload.broken, expected_revision=payload.expectedRevision)
    LOGGER.info("Force return rental_id=%s actor=%s broken=%s", rental_id, actor.ProfileID, payload.broken)
    return serialize_rental(rental)


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    return None


def _require_profile(request: Request, session_token: str | None, db: Session) -> Profile:
    session = _get_active_session(request, session_token)
    if not session:
        raise NotAuthenticated("Not logged in.")
    try:
        profile_id = int(session.get("profileID") or 0)
    except (TypeError, ValueError):
        profile_id = 0
    # The role is read from the store on every request, never from the session.
    profile = db.get(Profile, profile_id, populate_existing=True) if profile_id > 0 else None
    if not profile:
        request.session.clear()
        raise NotAuthenticated("Not logged in.")
    return profile


def _require_right(request: Request, session_token: str | None, db: Session, action: str) -> Profile:
    profile = _require_profile(request, session_token, db)
    decision = authorize(profile.Role, action)
    if not decision:
        AUTH_LOGGER.warning(
            "Access denied profile_id=%s role=%s action=%s reason=%s",
            profile.ProfileID,
            profile.Role,
            action,
            decision.reason,
        )
        raise AccessDenied(decision.reason, action=action)
    return profile


UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR), check_dir=False), name="uploads")
