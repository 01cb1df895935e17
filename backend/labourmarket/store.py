"""MongoDB persistence for users, labourers and bookings.

Documents are keyed by an application-generated string ``id``; Mongo's own
``_id`` is projected away on every read.
"""

import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import Conflict
from .models import utcnow

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}

# FCM accepts at most 500 tokens per multicast
BROADCAST_BATCH = 500


class MongoStore:
    def __init__(self, client: AsyncIOMotorClient, db_name: str):
        self.client = client
        self.db = client[db_name]

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str) -> "MongoStore":
        return cls(AsyncIOMotorClient(mongo_url, tz_aware=True), db_name)

    async def ensure_indexes(self) -> None:
        await self.db.users.create_indexes(
            [
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("email", ASCENDING)], unique=True),
            ]
        )
        await self.db.labourers.create_indexes(
            [
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel(
                    [("user_id", ASCENDING)],
                    unique=True,
                    partialFilterExpression={"user_id": {"$type": "string"}},
                ),
                IndexModel([("category", ASCENDING)]),
            ]
        )
        await self.db.bookings.create_indexes(
            [
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("user_id", ASCENDING), ("date", DESCENDING)]),
                IndexModel([("labourer_id", ASCENDING), ("date", DESCENDING)]),
                IndexModel([("category", ASCENDING), ("status", ASCENDING)]),
            ]
        )
        logger.info("MongoDB indexes ensured on %s", self.db.name)

    def close(self) -> None:
        self.client.close()

    # ---------------------------
    # Users
    # ---------------------------

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"id": user_id}, NO_ID)

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"email": email}, NO_ID)

    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = list({i for i in user_ids if i})
        if not ids:
            return {}
        docs = await self.db.users.find({"id": {"$in": ids}}, NO_ID).to_list(len(ids))
        return {d["id"]: d for d in docs}

    async def insert_user(self, doc: Dict[str, Any]) -> None:
        try:
            await self.db.users.insert_one(dict(doc))
        except DuplicateKeyError:
            raise Conflict("User already exists")

    async def set_push_token(self, user_id: str, token: Optional[str]) -> bool:
        res = await self.db.users.update_one({"id": user_id}, {"$set": {"push_token": token}})
        return res.matched_count == 1

    async def set_profile_picture(self, user_id: str, picture: str) -> Optional[Dict[str, Any]]:
        """Set the user's picture; a worker's labourer ``image_url`` follows it."""
        doc = await self.db.users.find_one_and_update(
            {"id": user_id},
            {"$set": {"profile_picture": picture}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        if doc and doc.get("role") == "worker":
            await self.db.labourers.update_one({"user_id": user_id}, {"$set": {"image_url": picture}})
        return doc

    async def add_address(self, user_id: str, address: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        doc = await self.db.users.find_one_and_update(
            {"id": user_id},
            {"$push": {"addresses": address}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return doc.get("addresses", []) if doc else None

    # ---------------------------
    # Labourers
    # ---------------------------

    async def get_labourer(self, labourer_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.labourers.find_one({"id": labourer_id}, NO_ID)

    async def get_labourer_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.labourers.find_one({"user_id": user_id}, NO_ID)

    async def get_labourers(self, labourer_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = list({i for i in labourer_ids if i})
        if not ids:
            return {}
        docs = await self.db.labourers.find({"id": {"$in": ids}}, NO_ID).to_list(len(ids))
        return {d["id"]: d for d in docs}

    async def list_labourers(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        return await self.db.labourers.find(query, NO_ID).sort("rating", DESCENDING).to_list(None)

    async def iter_category_user_ids(self, category: str, batch_size: int = BROADCAST_BATCH) -> AsyncIterator[List[str]]:
        """Yield the owning user ids of a category's labourers, ``batch_size`` at a time."""
        batch: List[str] = []
        async for doc in self.db.labourers.find({"category": category}, {"_id": 0, "user_id": 1}):
            if doc.get("user_id"):
                batch.append(doc["user_id"])
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def count_labourers(self) -> int:
        return await self.db.labourers.count_documents({})

    async def insert_labourer(self, doc: Dict[str, Any]) -> None:
        try:
            await self.db.labourers.insert_one(dict(doc))
        except DuplicateKeyError:
            raise Conflict("Labourer profile already exists")

    async def insert_labourers(self, docs: List[Dict[str, Any]]) -> None:
        await self.db.labourers.insert_many([dict(d) for d in docs])

    async def delete_labourers(self) -> int:
        res = await self.db.labourers.delete_many({})
        return res.deleted_count

    async def upsert_labourer_for_user(self, user_id: str, fields: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
        """Update the caller's labourer profile, creating it from ``defaults`` if missing."""
        # $set and $setOnInsert must not touch the same path
        defaults = {k: v for k, v in defaults.items() if k not in fields and k != "user_id"}
        return await self.db.labourers.find_one_and_update(
            {"user_id": user_id},
            {"$set": fields, "$setOnInsert": defaults},
            projection=NO_ID,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    async def increment_jobs_completed(self, labourer_id: str) -> None:
        await self.db.labourers.update_one({"id": labourer_id}, {"$inc": {"jobs_completed": 1}})

    async def mark_completion_counted(self, booking_id: str) -> bool:
        """Flag the booking's completion as counted; False if it already was."""
        res = await self.db.bookings.update_one(
            {"id": booking_id, "completion_counted": {"$ne": True}},
            {"$set": {"completion_counted": True}},
        )
        return res.modified_count == 1

    # ---------------------------
    # Bookings
    # ---------------------------

    async def insert_booking(self, doc: Dict[str, Any]) -> None:
        await self.db.bookings.insert_one(dict(doc))

    async def get_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.bookings.find_one({"id": booking_id}, NO_ID)

    async def bookings_for_owner(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.db.bookings.find({"user_id": user_id}, NO_ID).sort("date", DESCENDING).to_list(None)

    async def bookings_for_worker(self, labourer_id: str, category: str) -> List[Dict[str, Any]]:
        query = {
            "$or": [
                {"labourer_id": labourer_id},
                {"labourer_id": None, "category": category, "status": "pending"},
            ]
        }
        return await self.db.bookings.find(query, NO_ID).sort("date", DESCENDING).to_list(None)

    async def claim_booking(self, booking_id: str, labourer_id: str) -> Optional[Dict[str, Any]]:
        """Attach ``labourer_id`` only while the booking is still open and unassigned.

        Returns the updated booking, or None when another claim won.
        """
        return await self.db.bookings.find_one_and_update(
            {"id": booking_id, "labourer_id": None, "status": "pending"},
            {"$set": {"labourer_id": labourer_id, "status": "confirmed", "updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def transition_status(self, booking_id: str, from_status: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.db.bookings.find_one_and_update(
            {"id": booking_id, "status": from_status},
            {"$set": {**fields, "updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def transition_payment(self, booking_id: str, from_payment_status: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.db.bookings.find_one_and_update(
            {"id": booking_id, "payment_status": from_payment_status},
            {"$set": {**fields, "updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def update_booking(self, booking_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.db.bookings.find_one_and_update(
            {"id": booking_id},
            {"$set": {**fields, "updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
