import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

# -------------------------------------------------
# Enums
# -------------------------------------------------

RoleType = Literal["customer", "worker"]
BookingMode = Literal["hourly", "daily", "task-based"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "released", "refunded"]

BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------------------------------
# Identity store
# -------------------------------------------------


class Address(BaseModel):
    id: str = Field(default_factory=new_id)
    label: Optional[str] = None
    address: str
    house_number: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(extra="ignore")


class UserInDB(BaseModel):
    id: str
    name: str
    email: EmailStr
    password_hash: str
    role: RoleType = "customer"
    profile_picture: str = ""
    push_token: Optional[str] = None
    addresses: List[Address] = []
    created_at: datetime

    model_config = ConfigDict(extra="ignore")

    def public(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"password_hash"})


# -------------------------------------------------
# Labourer registry
# -------------------------------------------------


class Labourer(BaseModel):
    id: str
    user_id: Optional[str] = None
    name: str
    category: str
    rating: float = 0
    jobs_completed: int = 0
    hourly_rate: float
    description: str = ""
    image_url: str = ""
    location: str
    skills: List[str] = []
    experience_years: int

    model_config = ConfigDict(extra="ignore")


def placeholder_labourer(user: UserInDB) -> Labourer:
    """Profile a worker gets at signup, completed later via the profile endpoint."""
    return Labourer(
        id=new_id(),
        user_id=user.id,
        name=user.name,
        category="General",
        hourly_rate=0,
        location="Not set",
        experience_years=0,
        image_url=user.profile_picture,
    )


# -------------------------------------------------
# Booking ledger
# -------------------------------------------------


class Booking(BaseModel):
    id: str
    user_id: str
    labourer_id: Optional[str] = None
    category: str
    date: datetime
    booking_mode: BookingMode
    number_of_hours: Optional[float] = None
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[float] = None
    notes: Optional[str] = None
    address: Optional[str] = None
    house_number: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    completion_counted: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(extra="ignore")

    @property
    def is_broadcast(self) -> bool:
        return self.labourer_id is None


class BookingCreateRequest(BaseModel):
    labourer_id: Optional[str] = None
    category: Optional[str] = None
    date: datetime
    booking_mode: BookingMode
    number_of_hours: Optional[float] = None
    notes: Optional[str] = None
    address: Optional[str] = None
    house_number: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


# Summary fields attached to listings for display
LABOURER_SUMMARY_FIELDS = ("id", "name", "category", "image_url", "hourly_rate", "location")
OWNER_SUMMARY_FIELDS = ("id", "name", "email")


def summarize(doc: Optional[Dict[str, Any]], fields) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    return {f: doc.get(f) for f in fields}
