"""MongoDB-backed stores.

All persistence goes through Motor. Ids are small integers handed out by an
atomic per-collection counter, timestamps are stored as ISO strings, and every
query projects away Mongo's ``_id``.
"""
import io
import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from errors import NotFound

logger = logging.getLogger(__name__)

LIST_LIMIT = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def next_sequence(db, name: str) -> int:
    """Atomically increment and fetch the id counter for ``name``."""
    counter = await db.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER
    )
    return int(counter["seq"])


async def ensure_indexes(db):
    await db.users.create_index("username", unique=True)
    await db.users.create_index("caretaker_id")
    for collection in ("memories", "routines", "medications", "emergency_logs"):
        await db[collection].create_index("patient_id")
        await db[collection].create_index("id", unique=True)
    await db.users.create_index("id", unique=True)
    await db.memories.create_index([("created_at", DESCENDING)])
    await db.emergency_logs.create_index([("timestamp", DESCENDING)])
    await db.user_sessions.create_index("session_token", unique=True)
    logger.info("MongoDB indexes ensured")


# ==================== ACCOUNTS ====================

class AccountStore:
    def __init__(self, db):
        self.db = db

    async def get(self, user_id: int) -> Optional[dict]:
        return await self.db.users.find_one({"id": user_id}, {"_id": 0})

    async def get_by_username(self, username: str) -> Optional[dict]:
        return await self.db.users.find_one({"username": username}, {"_id": 0})

    async def create(self, fields: dict) -> dict:
        doc = {
            **fields,
            "id": await next_sequence(self.db, "users"),
            "created_at": utc_now().isoformat()
        }
        await self.db.users.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def patients_for_caretaker(self, caretaker_id: int) -> List[dict]:
        return await self.db.users.find(
            {"caretaker_id": caretaker_id, "role": "patient"},
            {"_id": 0}
        ).sort("username", ASCENDING).to_list(LIST_LIMIT)

    async def linked_patient(self, caretaker_id: int, patient_id: int) -> Optional[dict]:
        return await self.db.users.find_one(
            {"id": patient_id, "caretaker_id": caretaker_id, "role": "patient"},
            {"_id": 0}
        )


# ==================== SESSIONS ====================

class SessionStore:
    """Server-side sessions keyed by an opaque cookie token."""

    def __init__(self, db, ttl: timedelta):
        self.db = db
        self.ttl = ttl

    async def create(self, user_id: int) -> str:
        now = utc_now()
        token = f"sess_{secrets.token_urlsafe(32)}"
        await self.db.user_sessions.insert_one({
            "session_token": token,
            "user_id": user_id,
            "created_at": now.isoformat(),
            "expires_at": (now + self.ttl).isoformat()
        })
        return token

    async def resolve(self, token: str) -> Optional[int]:
        session = await self.db.user_sessions.find_one({"session_token": token}, {"_id": 0})
        if not session:
            return None
        if datetime.fromisoformat(session["expires_at"]) <= utc_now():
            await self.delete(token)
            return None
        return session["user_id"]

    async def delete(self, token: str):
        await self.db.user_sessions.delete_one({"session_token": token})


# ==================== PATIENT-OWNED RESOURCES ====================

class ResourceStore:
    collection_name = ""
    label = "Record"
    timestamp_field = "created_at"

    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db[self.collection_name]

    async def create(self, patient_id: int, fields: dict) -> dict:
        doc = {
            **fields,
            "id": await next_sequence(self.db, self.collection_name),
            "patient_id": patient_id,
            self.timestamp_field: utc_now().isoformat()
        }
        await self.collection.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def list(self, patient_ids: Iterable[int]) -> List[dict]:
        patient_ids = list(patient_ids)
        if not patient_ids:
            return []
        return await self.collection.find(
            {"patient_id": {"$in": patient_ids}},
            {"_id": 0}
        ).sort("id", DESCENDING).to_list(LIST_LIMIT)

    async def get(self, record_id: int) -> dict:
        doc = await self.collection.find_one({"id": record_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"{self.label} not found")
        return doc


class ToggleStore(ResourceStore):
    completion_field = "is_completed"

    async def create(self, patient_id: int, fields: dict) -> dict:
        fields = {self.completion_field: False, **fields}
        return await super().create(patient_id, fields)

    async def toggle(self, record_id: int) -> dict:
        doc = await self.get(record_id)
        new_value = not doc.get(self.completion_field, False)
        await self.collection.update_one(
            {"id": record_id},
            {"$set": {self.completion_field: new_value}}
        )
        doc[self.completion_field] = new_value
        return doc


class RoutineStore(ToggleStore):
    collection_name = "routines"
    label = "Routine"
    completion_field = "is_completed"


class MedicationStore(ToggleStore):
    collection_name = "medications"
    label = "Medication"
    completion_field = "taken"


class EmergencyLogStore(ResourceStore):
    collection_name = "emergency_logs"
    label = "Emergency log"
    timestamp_field = "timestamp"

    async def trigger(self, patient_id: int) -> dict:
        return await self.create(patient_id, {"status": "sos_triggered", "resolved": False})

    async def resolve(self, record_id: int) -> dict:
        result = await self.collection.update_one(
            {"id": record_id},
            {"$set": {"resolved": True}}
        )
        if result.matched_count == 0:
            raise NotFound(f"{self.label} not found")
        return await self.get(record_id)


class MemoryStore(ResourceStore):
    collection_name = "memories"
    label = "Memory"

    async def create(self, patient_id: int, fields: dict) -> dict:
        fields = {
            "active_question_index": 0,
            "active_question_date": None,
            "answers": {},
            **fields
        }
        return await super().create(patient_id, fields)

    async def rotate_question(self, memory: dict, today: date) -> dict:
        """Advance the active question once per calendar day."""
        questions = memory.get("questions") or []
        stamp = today.isoformat()
        if not questions or memory.get("active_question_date") == stamp:
            return memory

        index = memory.get("active_question_index") or 0
        if memory.get("active_question_date") is not None:
            index = (index + 1) % len(questions)

        await self.collection.update_one(
            {"id": memory["id"]},
            {"$set": {"active_question_index": index, "active_question_date": stamp}}
        )
        return {**memory, "active_question_index": index, "active_question_date": stamp}

    async def record_answer(self, memory_id: int, answer: str, today: date) -> dict:
        result = await self.collection.update_one(
            {"id": memory_id},
            {"$push": {f"answers.{today.isoformat()}": answer}}
        )
        if result.matched_count == 0:
            raise NotFound(f"{self.label} not found")
        return await self.get(memory_id)


# ==================== FILES (MongoDB GridFS) ====================

class FileStore:
    def __init__(self, bucket: AsyncIOMotorGridFSBucket):
        self.bucket = bucket

    async def put(self, filename: str, content: bytes, content_type: str, owner_id: int) -> str:
        await self.bucket.upload_from_stream(
            filename,
            io.BytesIO(content),
            metadata={
                "user_id": owner_id,
                "content_type": content_type,
                "uploaded_at": utc_now().isoformat()
            }
        )
        return f"/api/files/{filename}"

    async def get(self, filename: str) -> Tuple[bytes, str]:
        try:
            grid_out = await self.bucket.open_download_stream_by_name(filename)
        except NoFile:
            raise NotFound("File not found")
        content = await grid_out.read()
        metadata = grid_out.metadata or {}
        return content, metadata.get("content_type", "application/octet-stream")


class Storage:
    """Every store, built over one Motor database handle."""

    def __init__(self, db, files: FileStore, session_ttl: timedelta):
        self.db = db
        self.accounts = AccountStore(db)
        self.sessions = SessionStore(db, session_ttl)
        self.memories = MemoryStore(db)
        self.routines = RoutineStore(db)
        self.medications = MedicationStore(db)
        self.emergency_logs = EmergencyLogStore(db)
        self.files = files

    async def startup(self):
        await ensure_indexes(self.db)
