import os
import warnings
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

ROOT_DIR = Path(__file__).resolve().parent.parent

DEV_JWT_SECRET = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - dev fallback only


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "labour_market"

    # Auth / JWT
    jwt_secret_key: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Payments ("stripe" or "offline")
    payment_mode: Literal["stripe", "offline"] = "offline"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    payment_key_secret: Optional[str] = None
    currency: str = "INR"

    # Push notifications (path to a Firebase service account json)
    firebase_credentials: Optional[str] = None

    # Booking rules
    strict_status_transitions: bool = True

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or ROOT_DIR / ".env")

        jwt_secret = os.environ.get("JWT_SECRET_KEY")
        if not jwt_secret:
            warnings.warn(
                "JWT_SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION",
                RuntimeWarning,
                stacklevel=2,
            )
            jwt_secret = DEV_JWT_SECRET

        payment_mode = os.environ.get("PAYMENT_MODE", "offline")
        stripe_key = os.environ.get("STRIPE_SECRET_KEY") or None
        if payment_mode == "stripe" and not stripe_key:
            warnings.warn("PAYMENT_MODE=stripe without STRIPE_SECRET_KEY; falling back to offline", RuntimeWarning, stacklevel=2)
            payment_mode = "offline"

        return cls(
            mongo_url=os.environ.get("MONGO_URL", "mongodb://localhost:27017"),
            db_name=os.environ.get("DB_NAME", "labour_market"),
            jwt_secret_key=jwt_secret,
            access_token_expire_minutes=int(os.environ.get("JWT_EXPIRE_MINUTES", "60")),
            payment_mode=payment_mode,
            stripe_secret_key=stripe_key,
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET") or None,
            payment_key_secret=os.environ.get("PAYMENT_KEY_SECRET") or None,
            currency=os.environ.get("PAYMENT_CURRENCY", "INR"),
            firebase_credentials=os.environ.get("FIREBASE_CREDENTIALS") or None,
            strict_status_transitions=_env_bool("STRICT_STATUS_TRANSITIONS", True),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
