import asyncio
import copy
from datetime import datetime, timedelta, timezone

import pytest

from labourmarket.config import Settings
from labourmarket.engine import AssignmentEngine
from labourmarket.errors import Conflict
from labourmarket.notifications import MulticastReport, NotificationDispatcher
from labourmarket.payments import PaymentBridge

PAYMENT_SECRET = "test_key_secret"


class InMemoryStore:
    """Dict-backed stand-in for MongoStore.

    Every method yields to the event loop once, the way a real round trip
    would, so concurrent callers interleave between reads and writes.
    """

    def __init__(self):
        self.users = {}
        self.labourers = {}
        self.bookings = {}

    async def _io(self):
        await asyncio.sleep(0)

    async def ensure_indexes(self):
        await self._io()

    def close(self):
        pass

    # users

    async def get_user(self, user_id):
        await self._io()
        return copy.deepcopy(self.users.get(user_id))

    async def get_user_by_email(self, email):
        await self._io()
        for u in self.users.values():
            if u["email"] == email:
                return copy.deepcopy(u)
        return None

    async def get_users(self, user_ids):
        await self._io()
        return {i: copy.deepcopy(self.users[i]) for i in set(user_ids) if i in self.users}

    async def insert_user(self, doc):
        await self._io()
        if any(u["email"] == doc["email"] for u in self.users.values()):
            raise Conflict("User already exists")
        self.users[doc["id"]] = copy.deepcopy(doc)

    async def set_push_token(self, user_id, token):
        await self._io()
        if user_id not in self.users:
            return False
        self.users[user_id]["push_token"] = token
        return True

    async def set_profile_picture(self, user_id, picture):
        await self._io()
        user = self.users.get(user_id)
        if user is None:
            return None
        user["profile_picture"] = picture
        if user["role"] == "worker":
            for l in self.labourers.values():
                if l.get("user_id") == user_id:
                    l["image_url"] = picture
        return copy.deepcopy(user)

    async def add_address(self, user_id, address):
        await self._io()
        user = self.users.get(user_id)
        if user is None:
            return None
        user.setdefault("addresses", []).append(copy.deepcopy(address))
        return copy.deepcopy(user["addresses"])

    # labourers

    async def get_labourer(self, labourer_id):
        await self._io()
        return copy.deepcopy(self.labourers.get(labourer_id))

    async def get_labourer_for_user(self, user_id):
        await self._io()
        for l in self.labourers.values():
            if l.get("user_id") == user_id:
                return copy.deepcopy(l)
        return None

    async def get_labourers(self, labourer_ids):
        await self._io()
        return {i: copy.deepcopy(self.labourers[i]) for i in set(labourer_ids) if i in self.labourers}

    async def list_labourers(self, category=None):
        await self._io()
        docs = [l for l in self.labourers.values() if not category or l["category"] == category]
        return copy.deepcopy(sorted(docs, key=lambda l: l.get("rating", 0), reverse=True))

    async def iter_category_user_ids(self, category, batch_size=500):
        await self._io()
        user_ids = [l["user_id"] for l in self.labourers.values() if l["category"] == category and l.get("user_id")]
        for start in range(0, len(user_ids), batch_size):
            yield user_ids[start:start + batch_size]

    async def count_labourers(self):
        await self._io()
        return len(self.labourers)

    async def insert_labourer(self, doc):
        await self._io()
        self.labourers[doc["id"]] = copy.deepcopy(doc)

    async def insert_labourers(self, docs):
        for d in docs:
            await self.insert_labourer(d)

    async def delete_labourers(self):
        await self._io()
        n = len(self.labourers)
        self.labourers.clear()
        return n

    async def upsert_labourer_for_user(self, user_id, fields, defaults):
        await self._io()
        for l in self.labourers.values():
            if l.get("user_id") == user_id:
                l.update(copy.deepcopy(fields))
                return copy.deepcopy(l)
        doc = {**copy.deepcopy(defaults), **copy.deepcopy(fields), "user_id": user_id}
        self.labourers[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def increment_jobs_completed(self, labourer_id):
        await self._io()
        if labourer_id in self.labourers:
            self.labourers[labourer_id]["jobs_completed"] = self.labourers[labourer_id].get("jobs_completed", 0) + 1

    async def mark_completion_counted(self, booking_id):
        await self._io()
        b = self.bookings.get(booking_id)
        if b is None or b.get("completion_counted"):
            return False
        b["completion_counted"] = True
        return True

    # bookings

    async def insert_booking(self, doc):
        await self._io()
        self.bookings[doc["id"]] = copy.deepcopy(doc)

    async def get_booking(self, booking_id):
        await self._io()
        return copy.deepcopy(self.bookings.get(booking_id))

    def _newest_first(self, docs):
        return copy.deepcopy(sorted(docs, key=lambda b: b["date"], reverse=True))

    async def bookings_for_owner(self, user_id):
        await self._io()
        return self._newest_first(b for b in self.bookings.values() if b["user_id"] == user_id)

    async def bookings_for_worker(self, labourer_id, category):
        await self._io()
        return self._newest_first(
            b
            for b in self.bookings.values()
            if b.get("labourer_id") == labourer_id
            or (b.get("labourer_id") is None and b["category"] == category and b["status"] == "pending")
        )

    async def claim_booking(self, booking_id, labourer_id):
        await self._io()
        b = self.bookings.get(booking_id)
        if b is None or b.get("labourer_id") is not None or b["status"] != "pending":
            return None
        b.update({"labourer_id": labourer_id, "status": "confirmed"})
        return copy.deepcopy(b)

    async def _conditional(self, booking_id, field, expected, fields):
        await self._io()
        b = self.bookings.get(booking_id)
        if b is None or b.get(field) != expected:
            return None
        b.update(copy.deepcopy(fields))
        return copy.deepcopy(b)

    async def transition_status(self, booking_id, from_status, fields):
        return await self._conditional(booking_id, "status", from_status, fields)

    async def transition_payment(self, booking_id, from_payment_status, fields):
        return await self._conditional(booking_id, "payment_status", from_payment_status, fields)

    async def update_booking(self, booking_id, fields):
        await self._io()
        b = self.bookings.get(booking_id)
        if b is None:
            return None
        b.update(copy.deepcopy(fields))
        return copy.deepcopy(b)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.enabled = True
        self.fail = fail
        self.sent = []
        self.multicasts = []

    async def send(self, token, title, body, data=None):
        if self.fail:
            raise RuntimeError("push provider unavailable")
        self.sent.append({"token": token, "title": title, "body": body, "data": data or {}})
        return True

    async def send_multicast(self, tokens, title, body, data=None):
        if self.fail:
            raise RuntimeError("push provider unavailable")
        self.multicasts.append({"tokens": list(tokens), "title": title, "body": body, "data": data or {}})
        return MulticastReport(success_count=len(tokens))


class RecordingGateway:
    mode = "recording"

    def __init__(self):
        self.orders = []
        self.refunds = []

    async def create_order(self, amount_minor, currency, metadata, receipt):
        self.orders.append({"amount": amount_minor, "currency": currency, "metadata": metadata, "receipt": receipt})
        return f"order_test_{len(self.orders)}"

    async def refund(self, order_id, payment_id, amount_minor):
        self.refunds.append({"order_id": order_id, "payment_id": payment_id, "amount": amount_minor})
        return f"rfnd_test_{len(self.refunds)}"


def run(coro):
    return asyncio.run(coro)


def when(days_from_now=1):
    return datetime.now(timezone.utc) + timedelta(days=days_from_now)


def add_user(store, user_id, role="customer", push_token=None, name=None):
    store.users[user_id] = {
        "id": user_id,
        "name": name or user_id.title(),
        "email": f"{user_id}@example.com",
        "password_hash": "x",
        "role": role,
        "profile_picture": "",
        "push_token": push_token,
        "addresses": [],
        "created_at": datetime.now(timezone.utc),
    }
    return store.users[user_id]


def add_labourer(store, labourer_id, user_id, category, push_token=None):
    add_user(store, user_id, role="worker", push_token=push_token)
    store.labourers[labourer_id] = {
        "id": labourer_id,
        "user_id": user_id,
        "name": user_id.title(),
        "category": category,
        "rating": 4.5,
        "jobs_completed": 0,
        "hourly_rate": 250.0,
        "description": "",
        "image_url": "",
        "location": "Mumbai",
        "skills": [],
        "experience_years": 5,
    }
    return store.labourers[labourer_id]


def add_booking(store, booking_id, user_id, category, labourer_id=None, status="pending", date=None, **extra):
    now = datetime.now(timezone.utc)
    store.bookings[booking_id] = {
        "id": booking_id,
        "user_id": user_id,
        "labourer_id": labourer_id,
        "category": category,
        "date": date or when(),
        "booking_mode": "hourly",
        "number_of_hours": 2,
        "status": status,
        "payment_status": "pending",
        "payment_id": None,
        "order_id": None,
        "amount": None,
        "notes": None,
        "created_at": now,
        "updated_at": now,
        **extra,
    }
    return store.bookings[booking_id]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def engine(store, dispatcher):
    return AssignmentEngine(store, dispatcher)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def payments(store, gateway):
    return PaymentBridge(store, gateway, PAYMENT_SECRET, "INR")


@pytest.fixture
def settings():
    return Settings(
        jwt_secret_key="test-secret",
        payment_key_secret=PAYMENT_SECRET,
        log_level="WARNING",
    )
