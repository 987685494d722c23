"""
WebAuthn credential storage.

Credentials are soft-deleted: revocation stamps ``revoked_at`` and every lookup
used by a ceremony filters revoked rows out. ``credential_id`` is unique across
the whole collection, not per user.
"""

from datetime import datetime
import time
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from passkey_service.config import settings
from passkey_service.managers.logging_manager import get_logger
from passkey_service.models.passkey_models import PasskeyCredential
from passkey_service.services.webauthn.challenge import utc_now
from passkey_service.services.webauthn.errors import (
    CredentialAlreadyRegisteredError,
    CredentialNotFoundError,
    ValidationError,
)
from passkey_service.utils.logging_utils import DatabaseContext, DatabaseLogger

logger = get_logger(name="Passkey_Service_Credentials", prefix="[WebAuthn Credentials]")
db_logger = DatabaseLogger(prefix="[WEBAUTHN-CREDENTIALS-DB]")

REQUIRED_CREDENTIAL_FIELDS = ("user_id", "credential_id", "credential_public_key")


def _object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


class CredentialStore:
    """Persistence for registered authenticator credentials."""

    def __init__(
        self,
        db_manager,
        collection_name: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_manager = db_manager
        self.collection_name = collection_name or settings.WEBAUTHN_CREDENTIALS_COLLECTION
        self._clock = clock or utc_now

    @property
    def collection(self):
        return self.db_manager.get_collection(self.collection_name)

    def _log(self, operation: str, query: Dict[str, Any], start_time: float, result_count: Optional[int] = None):
        db_logger.log_operation(
            DatabaseContext(
                operation=operation,
                collection=self.collection_name,
                query=query,
                duration=time.time() - start_time,
                result_count=result_count,
            )
        )

    async def ensure_indexes(self) -> None:
        collection = self.collection
        await collection.create_index("credential_id", unique=True, name="credential_id_unique")
        await collection.create_index([("user_id", ASCENDING), ("revoked_at", ASCENDING)], name="user_active")
        logger.info("Indexes ensured on %s", self.collection_name)

    async def list_for_user(self, user_id: str, *, session=None) -> List[PasskeyCredential]:
        """Non-revoked credentials of a user, oldest first."""
        start_time = time.time()
        query = {"user_id": str(user_id), "revoked_at": None}
        cursor = self.collection.find(query, session=session).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        docs = await cursor.to_list(length=None)
        self._log("list_credentials", query, start_time, len(docs))
        return [PasskeyCredential.from_document(doc) for doc in docs]

    async def find_by_credential_id(self, credential_id: str, *, session=None) -> Optional[PasskeyCredential]:
        start_time = time.time()
        query = {"credential_id": credential_id, "revoked_at": None}
        doc = await self.collection.find_one(query, session=session)
        self._log("find_credential", query, start_time, 1 if doc else 0)
        return PasskeyCredential.from_document(doc) if doc else None

    async def find_by_id(
        self, id: str, *, session=None, include_revoked: bool = False
    ) -> Optional[PasskeyCredential]:
        oid = _object_id(id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid}
        if not include_revoked:
            query["revoked_at"] = None
        doc = await self.collection.find_one(query, session=session)
        return PasskeyCredential.from_document(doc) if doc else None

    async def create(self, payload: Dict[str, Any], *, session=None) -> PasskeyCredential:
        """
        Insert a new credential.

        Args:
            payload: Credential fields; ``user_id``, ``credential_id`` and
                ``credential_public_key`` are required, ``signature_counter``
                defaults to 0
            session: Transaction session the insert participates in

        Returns:
            PasskeyCredential: The stored credential with its surrogate id

        Raises:
            ValidationError: If a required field is missing
            CredentialAlreadyRegisteredError: If the credential id is already stored
        """
        missing = [field for field in REQUIRED_CREDENTIAL_FIELDS if not payload.get(field)]
        if missing:
            raise ValidationError(
                f"Credential is missing required fields: {', '.join(missing)}",
                error_code="CREDENTIAL_FIELDS_MISSING",
                context={"missing": missing},
            )

        now = self._clock()
        doc = {
            "user_id": str(payload["user_id"]),
            "credential_id": payload["credential_id"],
            "credential_public_key": payload["credential_public_key"],
            "signature_counter": payload.get("signature_counter") or 0,
            "friendly_name": payload.get("friendly_name"),
            "credential_device_type": payload.get("credential_device_type"),
            "credential_backed_up": bool(payload.get("credential_backed_up", False)),
            "transports": list(dict.fromkeys(payload.get("transports") or [])),
            "metadata": payload.get("metadata") or {},
            "last_used_at": payload.get("last_used_at"),
            "revoked_at": None,
            "created_at": now,
            "updated_at": now,
        }

        start_time = time.time()
        try:
            result = await self.collection.insert_one(doc, session=session)
        except DuplicateKeyError:
            logger.warning("Credential %s is already registered", payload["credential_id"])
            raise CredentialAlreadyRegisteredError(
                "This passkey is already registered",
                context={"credential_id": payload["credential_id"]},
            ) from None

        self._log("insert_credential", {"user_id": doc["user_id"]}, start_time, 1)
        logger.info("Stored credential %s for user %s", doc["credential_id"], doc["user_id"])
        return PasskeyCredential.from_document({**doc, "_id": result.inserted_id})

    async def _update_active(self, id: str, update: Dict[str, Any], operation: str, *, session) -> PasskeyCredential:
        start_time = time.time()
        oid = _object_id(id)
        doc = None
        if oid is not None:
            doc = await self.collection.find_one_and_update(
                {"_id": oid, "revoked_at": None},
                update,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        self._log(operation, {"_id": str(id)}, start_time, 1 if doc else 0)
        if doc is None:
            raise CredentialNotFoundError("Passkey not found", context={"id": str(id)})
        return PasskeyCredential.from_document(doc)

    async def update_counter(self, id: str, counter: int, *, session=None) -> PasskeyCredential:
        """Store a new signature counter and stamp ``last_used_at``."""
        if counter is None or counter < 0:
            raise ValidationError("Signature counter must be a non-negative integer", context={"counter": counter})
        now = self._clock()
        return await self._update_active(
            id,
            {"$set": {"signature_counter": counter, "last_used_at": now, "updated_at": now}},
            "update_credential_counter",
            session=session,
        )

    async def touch_usage(self, id: str, *, session=None) -> PasskeyCredential:
        """Stamp ``last_used_at`` without changing the counter."""
        now = self._clock()
        return await self._update_active(
            id, {"$set": {"last_used_at": now, "updated_at": now}}, "touch_credential_usage", session=session
        )

    async def revoke(self, id: str, reason: Optional[str] = None, *, session=None) -> PasskeyCredential:
        """Soft-delete a credential; the row is kept for audit."""
        now = self._clock()
        credential = await self._update_active(
            id,
            {"$set": {"revoked_at": now, "updated_at": now, "metadata.revoked_reason": reason}},
            "revoke_credential",
            session=session,
        )
        logger.info("Revoked credential %s (reason: %s)", credential.credential_id, reason or "unspecified")
        return credential
