import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware

from .config import Settings
from .engine import AssignmentEngine
from .errors import Conflict, Forbidden, InvalidInput, LabourMarketError, NotFound
from .models import (
    Address,
    BookingCreateRequest,
    RoleType,
    UserInDB,
    new_id,
    placeholder_labourer,
    utcnow,
)
from .notifications import NotificationDispatcher, PushNotifier
from .payments import PaymentBridge, build_gateway
from .security import get_current_user, get_password_hash, require_role, token_for, verify_password
from .store import MongoStore

APP_PUBLIC_NAME = "Labour Market Backend"

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api")


# -------------------------------------------------
# Middleware & error mapping
# -------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error("%s %s 500 %.2fms request_id=%s", request.method, request.url.path, duration_ms, request_id)
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id
        logger.info(
            "%s %s %d %.2fms request_id=%s user=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
            getattr(request.state, "user_id", None),
        )
        return response


async def labour_market_error_handler(request: Request, exc: LabourMarketError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server Error"})


# -------------------------------------------------
# Dependencies
# -------------------------------------------------


def get_store(request: Request):
    return request.app.state.store


def get_engine(request: Request) -> AssignmentEngine:
    return request.app.state.engine


def get_payments(request: Request) -> PaymentBridge:
    return request.app.state.payments


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# ---------------------------
# Auth endpoints
# ---------------------------


class SignupRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    role: RoleType = "customer"
    profile_picture: str = ""


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: RoleType
    name: str
    profile_picture: str = ""


def _token_response(user: UserInDB, settings: Settings) -> TokenResponse:
    return TokenResponse(
        access_token=token_for(user, settings),
        role=user.role,
        name=user.name,
        profile_picture=user.profile_picture,
    )


@api_router.post("/auth/signup", response_model=TokenResponse)
async def signup(body: SignupRequest, store=Depends(get_store), settings: Settings = Depends(get_settings)):
    if await store.get_user_by_email(body.email):
        raise Conflict("User already exists")

    user = UserInDB(
        id=new_id(),
        name=body.name,
        email=body.email,
        password_hash=get_password_hash(body.password),
        role=body.role,
        profile_picture=body.profile_picture,
        created_at=utcnow(),
    )
    await store.insert_user(user.model_dump())

    if user.role == "worker":
        await store.insert_labourer(placeholder_labourer(user).model_dump())
    logger.info("New %s account %s", user.role, user.id)
    return _token_response(user, settings)


@api_router.post("/auth/login", response_model=TokenResponse)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    doc = await store.get_user_by_email(form_data.username)
    if not doc or not verify_password(form_data.password, doc["password_hash"]):
        raise InvalidInput("Invalid Credentials")
    return _token_response(UserInDB(**doc), settings)


# ---------------------------
# Labourer registry
# ---------------------------


@api_router.get("/labourers")
async def list_labourers(category: Optional[str] = None, store=Depends(get_store)):
    return await store.list_labourers(category)


@api_router.get("/labourers/{labourer_id}")
async def get_labourer(labourer_id: str, store=Depends(get_store)):
    labourer = await store.get_labourer(labourer_id)
    if not labourer:
        raise NotFound("Labourer not found")
    return labourer


# ---------------------------
# Profile
# ---------------------------


class WorkerProfileRequest(BaseModel):
    category: Optional[str] = None
    hourly_rate: Optional[float] = None
    description: Optional[str] = None
    location: Optional[str] = None
    skills: Optional[Union[List[str], str]] = None
    experience_years: Optional[int] = None


class PushTokenRequest(BaseModel):
    push_token: Optional[str] = Field(default=None, validation_alias=AliasChoices("push_token", "fcm_token"))


class ProfileImageRequest(BaseModel):
    profile_picture: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("profile_picture", "profilePicture")
    )


class AddressIn(BaseModel):
    label: Optional[str] = None
    address: str
    house_number: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def _parse_skills(skills: Union[List[str], str]) -> List[str]:
    raw = skills if isinstance(skills, list) else skills.split(",")
    seen: List[str] = []
    for s in raw:
        s = s.strip()
        if s and s not in seen:
            seen.append(s)
    return seen


@api_router.get("/profile/me")
async def profile_me(current_user: UserInDB = Depends(get_current_user), store=Depends(get_store)):
    profile: Dict[str, Any] = {"user": current_user.public()}
    if current_user.role == "worker":
        # None until the worker completes the profile
        profile["labourer"] = await store.get_labourer_for_user(current_user.id)
    return profile


@api_router.post("/profile/worker")
async def upsert_worker_profile(
    body: WorkerProfileRequest,
    current_user: UserInDB = Depends(get_current_user),
    store=Depends(get_store),
):
    if current_user.role != "worker":
        raise Forbidden("Access denied: Not a worker")
    if not body.category or not body.hourly_rate or not body.location or not body.experience_years:
        raise InvalidInput("Please enter all required fields")

    fields: Dict[str, Any] = {
        "name": current_user.name,
        "category": body.category.strip(),
        "hourly_rate": body.hourly_rate,
        "location": body.location,
        "experience_years": body.experience_years,
    }
    if body.description:
        fields["description"] = body.description
    if body.skills:
        fields["skills"] = _parse_skills(body.skills)

    defaults = placeholder_labourer(current_user).model_dump()
    labourer = await store.upsert_labourer_for_user(current_user.id, fields, defaults)
    logger.info("Worker profile updated for user %s (category=%s)", current_user.id, fields["category"])
    return labourer


@api_router.put("/profile/push-token")
async def update_push_token(
    body: PushTokenRequest,
    current_user: UserInDB = Depends(get_current_user),
    store=Depends(get_store),
):
    token = body.push_token
    logger.info("Push token update for user %s: %s", current_user.id, f"{token[:10]}..." if token else "null")
    await store.set_push_token(current_user.id, token or None)
    return {"msg": "Push token updated"}


@api_router.put("/profile/image")
async def update_profile_image(
    body: ProfileImageRequest,
    current_user: UserInDB = Depends(get_current_user),
    store=Depends(get_store),
):
    if not body.profile_picture:
        raise InvalidInput("No image data provided")
    doc = await store.set_profile_picture(current_user.id, body.profile_picture)
    if doc is None:
        raise NotFound("User not found")
    logger.info("Profile picture updated for user %s (%d chars)", current_user.id, len(body.profile_picture))
    return UserInDB(**doc).public()


@api_router.post("/profile/addresses")
async def add_address(
    body: AddressIn,
    current_user: UserInDB = Depends(get_current_user),
    store=Depends(get_store),
):
    address = Address(**body.model_dump())
    addresses = await store.add_address(current_user.id, address.model_dump())
    if addresses is None:
        raise NotFound("User not found")
    return addresses


# ---------------------------
# Bookings
# ---------------------------


class StatusUpdateRequest(BaseModel):
    status: str


@api_router.post("/bookings")
async def create_booking(
    body: BookingCreateRequest,
    current_user: UserInDB = Depends(require_role("customer")),
    engine: AssignmentEngine = Depends(get_engine),
):
    return await engine.create_booking(current_user.id, body)


@api_router.get("/bookings/user")
async def customer_bookings(
    current_user: UserInDB = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_engine),
):
    return await engine.list_customer_bookings(current_user.id)


@api_router.get("/bookings/worker")
async def worker_bookings(
    current_user: UserInDB = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_engine),
):
    return await engine.list_worker_bookings(current_user.id)


@api_router.put("/bookings/{booking_id}/claim")
async def claim_booking(
    booking_id: str,
    current_user: UserInDB = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_engine),
):
    return await engine.claim_booking(current_user.id, booking_id)


@api_router.put("/bookings/{booking_id}/status")
async def update_booking_status(
    booking_id: str,
    body: StatusUpdateRequest,
    current_user: UserInDB = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_engine),
):
    return await engine.update_status(current_user.id, booking_id, body.status)


# ---------------------------
# Payments
# ---------------------------


class CreateOrderRequest(BaseModel):
    booking_id: str = Field(validation_alias=AliasChoices("booking_id", "bookingId"))
    amount: float


class VerifyPaymentRequest(BaseModel):
    booking_id: str = Field(validation_alias=AliasChoices("booking_id", "bookingId"))
    order_id: str = Field(validation_alias=AliasChoices("order_id", "razorpay_order_id"))
    payment_id: str = Field(validation_alias=AliasChoices("payment_id", "razorpay_payment_id"))
    signature: str = Field(validation_alias=AliasChoices("signature", "razorpay_signature"))


@api_router.post("/payments/create-order")
async def create_order(
    body: CreateOrderRequest,
    current_user: UserInDB = Depends(get_current_user),
    payments: PaymentBridge = Depends(get_payments),
):
    return await payments.create_order(current_user.id, body.booking_id, body.amount)


@api_router.post("/payments/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    current_user: UserInDB = Depends(get_current_user),
    payments: PaymentBridge = Depends(get_payments),
):
    result = await payments.verify_payment(
        current_user.id, body.booking_id, body.order_id, body.payment_id, body.signature
    )
    if not result.success:
        return JSONResponse(status_code=400, content={"success": False, "msg": result.msg})
    return {"success": True, "msg": result.msg, "booking": result.booking}


@api_router.post("/payments/{booking_id}/release")
async def release_payment(
    booking_id: str,
    current_user: UserInDB = Depends(get_current_user),
    payments: PaymentBridge = Depends(get_payments),
):
    return await payments.release_payment(current_user.id, booking_id)


@api_router.post("/payments/{booking_id}/refund")
async def refund_payment(
    booking_id: str,
    current_user: UserInDB = Depends(get_current_user),
    payments: PaymentBridge = Depends(get_payments),
):
    return await payments.refund_payment(current_user.id, booking_id)


# ---------------------------
# Stripe webhook
# ---------------------------


@api_router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, payments: PaymentBridge = Depends(get_payments)):
    payload = await request.body()
    await payments.handle_stripe_webhook(payload, request.headers.get("stripe-signature"))
    return {"received": True}


# -------------------------------------------------
# Root
# -------------------------------------------------


@api_router.get("/")
async def root():
    return {"message": "Labour Market Backend is running"}


# -------------------------------------------------
# FastAPI app
# -------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    store=None,
    notifier: Optional[PushNotifier] = None,
    gateway=None,
) -> FastAPI:
    """Build the app; collaborators not passed in are constructed from settings."""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    store = store or MongoStore.from_url(settings.mongo_url, settings.db_name)
    notifier = notifier or PushNotifier.from_credentials(settings.firebase_credentials)
    gateway = gateway or build_gateway(settings)
    dispatcher = NotificationDispatcher(notifier)

    app = FastAPI(title=APP_PUBLIC_NAME)
    app.state.settings = settings
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.engine = AssignmentEngine(store, dispatcher, strict_transitions=settings.strict_status_transitions)
    app.state.payments = PaymentBridge(
        store,
        gateway,
        settings.payment_key_secret,
        settings.currency,
        webhook_secret=settings.stripe_webhook_secret,
    )

    @app.on_event("startup")
    async def startup_event():
        await store.ensure_indexes()
        logger.info(
            "%s started (payments=%s, push=%s, strict_transitions=%s)",
            APP_PUBLIC_NAME,
            gateway.mode,
            "on" if notifier.enabled else "off",
            settings.strict_status_transitions,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        await dispatcher.drain()
        store.close()

    app.include_router(api_router)
    app.add_exception_handler(LabourMarketError, labour_market_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app
