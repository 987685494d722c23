"""
Contracts for the collaborators the passkey orchestrator depends on, with
MongoDB-backed defaults.

Both defaults take the ceremony's transaction session so their reads and
writes commit or roll back together with the challenge and credential writes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from bson import ObjectId

from passkey_service.config import settings
from passkey_service.managers.logging_manager import get_logger

logger = get_logger(name="Passkey_Service_Collaborators", prefix="[Passkey Collaborators]")

# Never leaves the account directory.
PRIVATE_USER_FIELDS = {"hashed_password", "password", "totp_secret", "backup_codes", "reset_token"}


class AccountDirectory(Protocol):
    async def find_by_id(self, user_id: str, *, session=None) -> Optional[Dict[str, Any]]: ...

    async def find_by_email(self, email: str, *, session=None) -> Optional[Dict[str, Any]]: ...


class EventRecorder(Protocol):
    async def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        payload: Dict[str, Any],
        performed_by: Optional[str] = None,
        session=None,
    ) -> None: ...


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    """User document with a string ``id`` and without credential material."""
    user = {key: value for key, value in doc.items() if key not in PRIVATE_USER_FIELDS and key != "_id"}
    user["id"] = str(doc["_id"])
    return user


class MongoAccountDirectory:
    """Looks users up in the users collection."""

    def __init__(self, db_manager, collection_name: Optional[str] = None):
        self.db_manager = db_manager
        self.collection_name = collection_name or settings.USERS_COLLECTION

    @property
    def collection(self):
        return self.db_manager.get_collection(self.collection_name)

    async def find_by_id(self, user_id: str, *, session=None) -> Optional[Dict[str, Any]]:
        if user_id is None:
            return None
        key = ObjectId(user_id) if ObjectId.is_valid(str(user_id)) else user_id
        doc = await self.collection.find_one({"_id": key}, session=session)
        return public_user(doc) if doc else None

    async def find_by_email(self, email: str, *, session=None) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"email": email}, session=session)
        return public_user(doc) if doc else None


class MongoEventRecorder:
    """Appends immutable domain events to the events collection."""

    def __init__(self, db_manager, collection_name: Optional[str] = None):
        self.db_manager = db_manager
        self.collection_name = collection_name or settings.DOMAIN_EVENTS_COLLECTION

    async def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        payload: Dict[str, Any],
        performed_by: Optional[str] = None,
        session=None,
    ) -> None:
        event = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "event_type": event_type,
            "payload": payload,
            "performed_by": performed_by,
            "created_at": datetime.now(timezone.utc),
        }
        await self.db_manager.get_collection(self.collection_name).insert_one(event, session=session)
        logger.debug("Recorded %s for %s %s", event_type, entity_type, entity_id)
