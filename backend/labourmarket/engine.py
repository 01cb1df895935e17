"""Booking lifecycle and assignment rules.

A booking is either a direct request (created against one labourer) or a
broadcast request (no labourer, visible to every labourer of its category
until one of them claims it). Claims and status changes are single
conditional writes; push notifications go out afterwards on the dispatcher
and never affect the outcome of the write that triggered them.
"""

import logging
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from .errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthorized
from .models import (
    BOOKING_STATUSES,
    LABOURER_SUMMARY_FIELDS,
    OWNER_SUMMARY_FIELDS,
    Booking,
    BookingCreateRequest,
    new_id,
    summarize,
    utcnow,
)
from .notifications import MulticastReport, NotificationDispatcher

logger = logging.getLogger(__name__)

# (from, to) -> roles allowed to make the move
STATUS_TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    ("pending", "confirmed"): frozenset({"worker"}),
    ("pending", "cancelled"): frozenset({"customer", "worker"}),
    ("confirmed", "completed"): frozenset({"customer", "worker"}),
    ("confirmed", "cancelled"): frozenset({"customer", "worker"}),
}

# statuses that only make sense once a labourer is attached
REQUIRES_LABOURER = ("confirmed", "completed")


def check_transition(current: str, new_status: str, roles: Set[str], has_labourer: bool) -> None:
    allowed = STATUS_TRANSITIONS.get((current, new_status))
    if not allowed:
        raise InvalidInput(f"Invalid transition from {current} to {new_status}")
    if new_status in REQUIRES_LABOURER and not has_labourer:
        raise InvalidInput("Booking has no labourer assigned")
    if not roles & allowed:
        raise Forbidden(f"Not allowed to move booking from {current} to {new_status}")


class AssignmentEngine:
    def __init__(self, store, dispatcher: NotificationDispatcher, strict_transitions: bool = True):
        self.store = store
        self.dispatcher = dispatcher
        self.strict_transitions = strict_transitions

    # ---------------------------
    # Creation
    # ---------------------------

    async def create_booking(self, owner_id: str, request: BookingCreateRequest) -> Dict[str, Any]:
        category = (request.category or "").strip() or None

        labourer = None
        if request.labourer_id:
            labourer = await self.store.get_labourer(request.labourer_id)
            if not labourer:
                raise NotFound("Labourer not found")
            category = category or labourer["category"]
        elif not category:
            raise InvalidInput("Category is required for broadcast requests")

        if request.number_of_hours is not None and request.number_of_hours <= 0:
            raise InvalidInput("number_of_hours must be positive")

        now = utcnow()
        booking = Booking(
            id=new_id(),
            user_id=owner_id,
            labourer_id=labourer["id"] if labourer else None,
            category=category,
            date=request.date,
            booking_mode=request.booking_mode,
            number_of_hours=request.number_of_hours,
            notes=request.notes,
            address=request.address,
            house_number=request.house_number,
            landmark=request.landmark,
            latitude=request.latitude,
            longitude=request.longitude,
            status="pending",
            payment_status="pending",
            created_at=now,
            updated_at=now,
        )
        doc = booking.model_dump()
        await self.store.insert_booking(doc)

        if labourer:
            logger.info("Direct booking %s created for labourer %s", booking.id, labourer["id"])
            self.dispatcher.dispatch(
                self._push_to_user(
                    labourer.get("user_id"),
                    "New Job Request",
                    f"You have a new {category} booking request",
                    {"booking_id": booking.id, "type": "direct_request"},
                ),
                label=f"direct request {booking.id}",
            )
        else:
            logger.info("Broadcast booking %s created for category %s", booking.id, category)
            self.dispatcher.dispatch(self._broadcast(doc), label=f"broadcast {booking.id}")
        return doc

    # ---------------------------
    # Listing
    # ---------------------------

    async def list_customer_bookings(self, owner_id: str) -> List[Dict[str, Any]]:
        bookings = await self.store.bookings_for_owner(owner_id)
        labourers = await self.store.get_labourers(b.get("labourer_id") for b in bookings)
        for b in bookings:
            b["labourer"] = summarize(labourers.get(b.get("labourer_id")), LABOURER_SUMMARY_FIELDS)
        return bookings

    async def list_worker_bookings(self, user_id: str) -> List[Dict[str, Any]]:
        labourer = await self.store.get_labourer_for_user(user_id)
        if not labourer:
            raise NotFound("Labourer profile not found")

        bookings = await self.store.bookings_for_worker(labourer["id"], labourer["category"])
        owners = await self.store.get_users(b["user_id"] for b in bookings)
        for b in bookings:
            b["user"] = summarize(owners.get(b["user_id"]), OWNER_SUMMARY_FIELDS)
        return bookings

    # ---------------------------
    # Claim
    # ---------------------------

    async def claim_booking(self, user_id: str, booking_id: str) -> Dict[str, Any]:
        labourer = await self.store.get_labourer_for_user(user_id)
        if not labourer:
            raise NotFound("Labourer profile not found")

        booking = await self.store.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")
        if booking.get("labourer_id"):
            raise Conflict("Booking already claimed")
        if booking["category"] != labourer["category"]:
            raise Forbidden("Category mismatch")
        if booking["status"] != "pending":
            raise Conflict("Booking is no longer open")

        claimed = await self.store.claim_booking(booking_id, labourer["id"])
        if claimed is None:
            # lost the race between the read above and the write
            raise Conflict("Booking already claimed")
        logger.info("Booking %s claimed by labourer %s", booking_id, labourer["id"])

        self.dispatcher.dispatch(
            self._push_to_user(
                claimed["user_id"],
                "Booking Confirmed",
                f"{labourer['name']} accepted your {claimed['category']} booking",
                {"booking_id": booking_id, "type": "claimed"},
            ),
            label=f"claim {booking_id}",
        )

        owner = await self.store.get_user(claimed["user_id"])
        claimed["user"] = summarize(owner, OWNER_SUMMARY_FIELDS)
        return claimed

    # ---------------------------
    # Status
    # ---------------------------

    async def update_status(self, user_id: str, booking_id: str, new_status: str) -> Dict[str, Any]:
        if new_status not in BOOKING_STATUSES:
            raise InvalidInput("Invalid status")

        booking = await self.store.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")

        labourer: Optional[Dict[str, Any]] = None
        if booking.get("labourer_id"):
            labourer = await self.store.get_labourer(booking["labourer_id"])
        worker_user_id = labourer.get("user_id") if labourer else None

        roles: Set[str] = set()
        if booking["user_id"] == user_id:
            roles.add("customer")
        if worker_user_id and worker_user_id == user_id:
            roles.add("worker")
        if not roles:
            raise Unauthorized("Not authorized")

        current = booking["status"]
        if self.strict_transitions:
            check_transition(current, new_status, roles, labourer is not None)

        updated = await self.store.transition_status(booking_id, current, {"status": new_status})
        if updated is None:
            raise Conflict("Booking was modified concurrently, please retry")
        logger.info("Booking %s status %s -> %s by %s", booking_id, current, new_status, user_id)

        # a booking counts towards jobs_completed once, however often it re-completes
        if new_status == "completed" and labourer and await self.store.mark_completion_counted(booking_id):
            await self.store.increment_jobs_completed(labourer["id"])

        counterparty = worker_user_id if "customer" in roles else booking["user_id"]
        if counterparty and counterparty != user_id:
            self.dispatcher.dispatch(
                self._push_to_user(
                    counterparty,
                    "Booking status updated",
                    f"Your {booking['category']} booking is now {new_status}",
                    {"booking_id": booking_id, "status": new_status, "type": "status_updated"},
                ),
                label=f"status {booking_id}",
            )
        return updated

    # ---------------------------
    # Notification helpers
    # ---------------------------

    async def _push_to_user(self, user_id: Optional[str], title: str, body: str, data: Dict[str, Any]) -> bool:
        if not user_id:
            return False
        user = await self.store.get_user(user_id)
        token = user.get("push_token") if user else None
        if not token:
            logger.debug("No push token for user %s; skipping %r", user_id, title)
            return False
        return await self.dispatcher.notifier.send(token, title, body, data)

    async def _broadcast(self, booking: Dict[str, Any]) -> MulticastReport:
        category = booking["category"]
        total = MulticastReport()
        async for user_ids in self.store.iter_category_user_ids(category):
            users = await self.store.get_users(user_ids)
            tokens = [u["push_token"] for u in users.values() if u.get("push_token")]
            if not tokens:
                continue
            report = await self.dispatcher.notifier.send_multicast(
                tokens,
                "New Job Available",
                f"A new {category} job is available near you",
                {"booking_id": booking["id"], "category": category, "type": "broadcast_request"},
            )
            total.success_count += report.success_count
            total.failure_count += report.failure_count
            total.failed_tokens.extend(report.failed_tokens)
        if not total.success_count and not total.failure_count:
            logger.info("No %s labourers with push tokens for booking %s", category, booking["id"])
        return total
