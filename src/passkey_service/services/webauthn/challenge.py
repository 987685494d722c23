"""
WebAuthn challenge storage.

Challenges are persisted in MongoDB only. Each one is issued once, read back
under a write lock by the completing transaction, and consumed exactly once;
expiry is evaluated on read against ``expires_at``. Challenge state is never
cached outside the database so that two completing transactions always race
on the same document.
"""

from datetime import datetime, timezone
import time
from typing import Any, Callable, Dict, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from passkey_service.config import settings
from passkey_service.managers.logging_manager import get_logger
from passkey_service.models.passkey_models import ChallengeType, ConsumedReason, PasskeyChallenge
from passkey_service.services.webauthn.errors import NotFoundError, ValidationError
from passkey_service.utils.logging_utils import DatabaseContext, DatabaseLogger

logger = get_logger(name="Passkey_Service_Challenge", prefix="[WebAuthn Challenge]")
db_logger = DatabaseLogger(prefix="[WEBAUTHN-CHALLENGE-DB]")

REQUIRED_CHALLENGE_FIELDS = ("request_id", "type", "challenge", "expires_at")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStore:
    """Persistence for one-time ceremony challenges."""

    def __init__(
        self,
        db_manager,
        collection_name: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_manager = db_manager
        self.collection_name = collection_name or settings.WEBAUTHN_CHALLENGES_COLLECTION
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
        await collection.create_index("request_id", unique=True, name="request_id_unique")
        await collection.create_index([("user_id", ASCENDING), ("type", ASCENDING)], name="user_type")
        await collection.create_index("expires_at", name="expires_at")
        logger.info("Indexes ensured on %s", self.collection_name)

    async def create(self, payload: Dict[str, Any], *, session=None) -> PasskeyChallenge:
        """
        Insert a new active challenge.

        Args:
            payload: Challenge fields; ``request_id``, ``type``, ``challenge``
                (raw bytes) and ``expires_at`` are required
            session: Transaction session the insert participates in

        Returns:
            PasskeyChallenge: The stored challenge

        Raises:
            ValidationError: If a required field is missing, the type is unknown
                or the request id is already taken
        """
        missing = [field for field in REQUIRED_CHALLENGE_FIELDS if payload.get(field) in (None, b"", "")]
        if missing:
            raise ValidationError(
                f"Challenge is missing required fields: {', '.join(missing)}",
                error_code="CHALLENGE_FIELDS_MISSING",
                context={"missing": missing},
            )

        try:
            challenge_type = ChallengeType(payload["type"])
        except ValueError:
            raise ValidationError(
                f"Unknown challenge type: {payload['type']}",
                error_code="CHALLENGE_TYPE_INVALID",
                context={"type": str(payload["type"])},
            ) from None

        challenge = PasskeyChallenge(
            request_id=payload["request_id"],
            user_id=str(payload["user_id"]) if payload.get("user_id") is not None else None,
            email=payload.get("email"),
            type=challenge_type,
            challenge=payload["challenge"],
            options_snapshot=payload.get("options_snapshot") or {},
            metadata=payload.get("metadata") or {},
            expires_at=payload["expires_at"],
            created_at=self._clock(),
        )

        start_time = time.time()
        try:
            await self.collection.insert_one(challenge.to_document(), session=session)
        except DuplicateKeyError:
            raise ValidationError(
                "Challenge request id already exists",
                error_code="CHALLENGE_REQUEST_ID_TAKEN",
                context={"request_id": challenge.request_id},
            ) from None

        self._log("insert_challenge", {"request_id": challenge.request_id, "type": challenge.type}, start_time, 1)
        logger.debug("Stored %s challenge %s", challenge.type, challenge.request_id)
        return challenge

    async def _find(self, query: Dict[str, Any], *, session, lock: bool) -> Optional[Dict[str, Any]]:
        if not lock:
            return await self.collection.find_one(query, session=session)

        if session is None:
            raise ValueError("A locked read requires a transaction session")

        # Writing lock_version inside the caller's transaction makes any other
        # transaction touching this document conflict until we commit or abort.
        return await self.collection.find_one_and_update(
            query,
            {"$inc": {"lock_version": 1}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def find_by_id(self, request_id: str, *, session=None, lock: bool = False) -> Optional[PasskeyChallenge]:
        """Look up a challenge regardless of its state."""
        start_time = time.time()
        query = {"request_id": request_id}
        doc = await self._find(query, session=session, lock=lock)
        self._log("find_challenge", query, start_time, 1 if doc else 0)
        return PasskeyChallenge.from_document(doc) if doc else None

    async def find_active(self, request_id: str, *, session=None, lock: bool = False) -> Optional[PasskeyChallenge]:
        """
        Look up a challenge only if it is unconsumed and not yet expired.

        With ``lock=True`` the read takes a write lock on the document within
        ``session``; a concurrent locked read of the same challenge is retried
        once this transaction finishes and then sees the committed state.
        """
        start_time = time.time()
        now = self._clock()
        query = {"request_id": request_id, "consumed_at": None, "expires_at": {"$gt": now}}
        doc = await self._find(query, session=session, lock=lock)
        self._log("find_active_challenge", {"request_id": request_id, "lock": lock}, start_time, 1 if doc else 0)
        challenge = PasskeyChallenge.from_document(doc) if doc else None
        if challenge is None or not challenge.is_active(now):
            logger.info("No active challenge for request %s", request_id)
            return None
        return challenge

    async def consume(
        self,
        request_id: str,
        *,
        reason: ConsumedReason = ConsumedReason.COMPLETED,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session=None,
    ) -> PasskeyChallenge:
        """
        Mark a challenge consumed.

        Does not re-check the active state: callers read it with
        ``find_active(lock=True)`` in the same transaction first.
        """
        start_time = time.time()
        reason = ConsumedReason(reason)
        doc = await self.collection.find_one_and_update(
            {"request_id": request_id},
            {
                "$set": {
                    "consumed_at": self._clock(),
                    "consumed_reason": reason.value,
                    "consumed_ip": ip_address,
                    "consumed_user_agent": user_agent,
                }
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        self._log("consume_challenge", {"request_id": request_id, "reason": reason.value}, start_time, 1 if doc else 0)
        if doc is None:
            raise NotFoundError(
                "Challenge not found",
                error_code="CHALLENGE_NOT_FOUND",
                context={"request_id": request_id},
            )

        logger.info("Consumed challenge %s (%s)", request_id, reason.value)
        return PasskeyChallenge.from_document(doc)

    async def expire_stale(self, *, session=None) -> int:
        """Mark every unconsumed challenge past its deadline as expired. Returns the count."""
        start_time = time.time()
        now = self._clock()
        result = await self.collection.update_many(
            {"consumed_at": None, "expires_at": {"$lte": now}},
            {"$set": {"consumed_at": now, "consumed_reason": ConsumedReason.EXPIRED.value}},
            session=session,
        )
        self._log("expire_stale_challenges", {"expires_at_lte": now.isoformat()}, start_time, result.modified_count)
        if result.modified_count:
            logger.info("Expired %d stale challenges", result.modified_count)
        return result.modified_count
