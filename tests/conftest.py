"""
Pytest configuration for passkey service tests.

Provides an in-memory stand-in for the Motor collections and transaction
runner so the real stores, Mongo collaborators and orchestrator can be
exercised end to end, plus a scriptable ceremony engine.

The fake transaction runner keeps an undo log per session (rolled back when
the callback raises) and per-document locks: a write inside a transaction
locks the document until that transaction finishes, and a second transaction
writing the same document waits and then re-evaluates its filter. This mirrors
the write-conflict retry the driver performs against a replica set.
"""

import asyncio
import base64
import copy
from datetime import datetime, timedelta, timezone
import itertools
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from bson import ObjectId
import pytest
import pytest_asyncio
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from passkey_service.models.passkey_models import PasskeyConfig  # noqa: E402
from passkey_service.services.webauthn.ceremony import (  # noqa: E402
    AuthenticationInfo,
    AuthenticationVerification,
    GeneratedOptions,
    RegisteredCredentialInfo,
    RegistrationVerification,
)
from passkey_service.services.webauthn.challenge import ChallengeStore  # noqa: E402
from passkey_service.services.webauthn.collaborators import (  # noqa: E402
    MongoAccountDirectory,
    MongoEventRecorder,
)
from passkey_service.services.webauthn.credentials import CredentialStore  # noqa: E402
from passkey_service.services.webauthn.orchestrator import PasskeyOrchestrator  # noqa: E402

# ---------------------------------------------------------------------------
# In-memory MongoDB
# ---------------------------------------------------------------------------


def _get_field(doc: Dict[str, Any], key: str) -> Any:
    value: Any = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _set_field(doc: Dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = _get_field(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if value is None and op in ("$gt", "$gte", "$lt", "$lte"):
                    return False
                if op == "$gt" and not value > operand:
                    return False
                if op == "$gte" and not value >= operand:
                    return False
                if op == "$lt" and not value < operand:
                    return False
                if op == "$lte" and not value <= operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
                if op == "$in" and value not in operand:
                    return False
        elif value != condition:
            return False
    return True


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for key, value in update.get("$set", {}).items():
        _set_field(doc, key, copy.deepcopy(value))
    for key, amount in update.get("$inc", {}).items():
        _set_field(doc, key, (_get_field(doc, key) or 0) + amount)


class FakeSession:
    """Transaction handle: undo log plus the document locks it holds."""

    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(self._ids)
        self.undo: List[Any] = []
        self.locks: List[asyncio.Lock] = []
        self.held = set()


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, keys, direction=None):
        if isinstance(keys, str):
            keys = [(keys, direction or 1)]
        for key, order in reversed(keys):
            self._docs.sort(key=lambda d: _get_field(d, key), reverse=order < 0)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the passkey service."""

    def __init__(self, name: str, manager: "FakeDatabaseManager"):
        self.name = name
        self.manager = manager
        self.docs: List[Dict[str, Any]] = []
        self.indexes: List[Dict[str, Any]] = []
        self.unique_fields: List[str] = []

    # -- helpers --------------------------------------------------------

    def _index_of(self, _id) -> int:
        for i, doc in enumerate(self.docs):
            if doc["_id"] == _id:
                return i
        return -1

    def _check_unique(self, doc: Dict[str, Any], ignore_id=None) -> None:
        for field in self.unique_fields:
            value = doc.get(field)
            for other in self.docs:
                if other["_id"] != ignore_id and other.get(field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {field}")

    async def _lock(self, doc: Dict[str, Any], session: Optional[FakeSession]) -> None:
        if session is None:
            return
        key = (self.name, doc["_id"])
        if key in session.held:
            return
        lock = self.manager.document_lock(key)
        await lock.acquire()
        session.held.add(key)
        session.locks.append(lock)

    def _snapshot_for_undo(self, doc: Dict[str, Any], session: Optional[FakeSession]) -> None:
        if session is None:
            return
        before = copy.deepcopy(doc)

        def restore():
            index = self._index_of(before["_id"])
            if index >= 0:
                self.docs[index] = before

        session.undo.append(restore)

    async def _write_one(self, query, update, session) -> Optional[Dict[str, Any]]:
        """Lock the first match, re-check the filter once the lock is held, then update."""
        while True:
            doc = next((d for d in self.docs if _matches(d, query)), None)
            if doc is None:
                return None
            await self._lock(doc, session)
            index = self._index_of(doc["_id"])
            if index < 0:
                continue
            current = self.docs[index]
            if _matches(current, query):
                self._snapshot_for_undo(current, session)
                _apply_update(current, update)
                return current
            # changed while we waited; look again

    # -- Motor API ------------------------------------------------------

    async def create_index(self, keys, unique: bool = False, name: Optional[str] = None, **kwargs):
        self.indexes.append({"keys": keys, "unique": unique, "name": name})
        if unique and isinstance(keys, str):
            self.unique_fields.append(keys)
        return name

    async def insert_one(self, document: Dict[str, Any], session: Optional[FakeSession] = None):
        await asyncio.sleep(0)
        self.manager.operations.append(("insert_one", self.name, session))
        document.setdefault("_id", ObjectId())
        self._check_unique(document)
        stored = copy.deepcopy(document)
        self.docs.append(stored)
        if session is not None:

            def remove():
                self.docs[:] = [d for d in self.docs if d["_id"] != stored["_id"]]

            session.undo.append(remove)
        return SimpleNamespace(inserted_id=document["_id"], acknowledged=True)

    async def find_one(self, query: Dict[str, Any], session: Optional[FakeSession] = None):
        await asyncio.sleep(0)
        self.manager.operations.append(("find_one", self.name, session))
        doc = next((d for d in self.docs if _matches(d, query)), None)
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, query: Dict[str, Any], session: Optional[FakeSession] = None):
        self.manager.operations.append(("find", self.name, session))
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        return_document=ReturnDocument.BEFORE,
        session: Optional[FakeSession] = None,
        **kwargs,
    ):
        await asyncio.sleep(0)
        self.manager.operations.append(("find_one_and_update", self.name, session))
        before = next((copy.deepcopy(d) for d in self.docs if _matches(d, query)), None)
        doc = await self._write_one(query, update, session)
        if doc is None:
            return None
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def update_one(self, query, update, session: Optional[FakeSession] = None, **kwargs):
        await asyncio.sleep(0)
        self.manager.operations.append(("update_one", self.name, session))
        doc = await self._write_one(query, update, session)
        count = 1 if doc is not None else 0
        return SimpleNamespace(matched_count=count, modified_count=count)

    async def update_many(self, query, update, session: Optional[FakeSession] = None, **kwargs):
        await asyncio.sleep(0)
        self.manager.operations.append(("update_many", self.name, session))
        modified = 0
        for doc in [d for d in self.docs if _matches(d, query)]:
            await self._lock(doc, session)
            if _matches(doc, query):
                self._snapshot_for_undo(doc, session)
                _apply_update(doc, update)
                modified += 1
        return SimpleNamespace(matched_count=modified, modified_count=modified)


class FakeDatabaseManager:
    """In-memory replacement for DatabaseManager."""

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.operations: List[Any] = []
        self.transactions: List[Dict[str, Any]] = []
        self._locks: Dict[Any, asyncio.Lock] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, self)
        return self.collections[name]

    def document_lock(self, key) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def run_in_transaction(self, callback, operation: str = "transaction"):
        session = FakeSession()
        try:
            result = await callback(session)
        except BaseException:
            for undo in reversed(session.undo):
                undo()
            self.transactions.append({"operation": operation, "committed": False})
            raise
        finally:
            for lock in session.locks:
                lock.release()
        self.transactions.append({"operation": operation, "committed": True})
        return result


# ---------------------------------------------------------------------------
# Ceremony engine and clock
# ---------------------------------------------------------------------------


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class FakeCeremonyEngine:
    """
    Scriptable ceremony engine.

    A response verifies when its ``challenge`` field equals the base64url form
    of the expected challenge and it does not carry ``"reject": True``.
    Registration responses report ``counter`` (default 0); authentication
    responses report ``new_counter`` (absent means no counter).
    """

    def __init__(self):
        self._challenges = itertools.count(1)
        self.calls: List[Any] = []

    def _next_challenge(self) -> bytes:
        return f"challenge-{next(self._challenges)}".encode("ascii")

    def generate_registration_options(self, **kwargs) -> GeneratedOptions:
        self.calls.append(("generate_registration_options", kwargs))
        challenge = self._next_challenge()
        options = {
            "challenge": b64url(challenge),
            "rp": {"id": kwargs["rp_id"], "name": kwargs["rp_name"]},
            "user": {"id": kwargs["user_id"], "name": kwargs["user_name"]},
            "timeout": kwargs["timeout_ms"],
            "excludeCredentials": [
                {"id": c.credential_id, "type": "public-key"} for c in kwargs["exclude_credentials"]
            ],
        }
        return GeneratedOptions(challenge=challenge, options=options)

    def generate_authentication_options(self, **kwargs) -> GeneratedOptions:
        self.calls.append(("generate_authentication_options", kwargs))
        challenge = self._next_challenge()
        options = {
            "challenge": b64url(challenge),
            "rpId": kwargs["rp_id"],
            "timeout": kwargs["timeout_ms"],
            "allowCredentials": [{"id": c.credential_id, "type": "public-key"} for c in kwargs["allow_credentials"]],
        }
        return GeneratedOptions(challenge=challenge, options=options)

    def _accepts(self, response: Dict[str, Any], expected_challenge: bytes) -> bool:
        return not response.get("reject") and response.get("challenge") == b64url(expected_challenge)

    def verify_registration_response(self, **kwargs) -> RegistrationVerification:
        self.calls.append(("verify_registration_response", kwargs))
        response = kwargs["response"]
        if not self._accepts(response, kwargs["expected_challenge"]):
            return RegistrationVerification(verified=False, failure_reason="challenge mismatch")
        info = RegisteredCredentialInfo(
            credential_id=response["id"],
            public_key=b"public-key-" + response["id"].encode("ascii"),
            counter=response.get("counter", 0),
            device_type="multi_device",
            backed_up=True,
            transports=response.get("response", {}).get("transports", []),
            aaguid="00000000-0000-0000-0000-000000000000",
        )
        return RegistrationVerification(verified=True, registration_info=info)

    def verify_authentication_response(self, **kwargs) -> AuthenticationVerification:
        self.calls.append(("verify_authentication_response", kwargs))
        response = kwargs["response"]
        if not self._accepts(response, kwargs["expected_challenge"]):
            return AuthenticationVerification(verified=False, failure_reason="challenge mismatch")
        info = AuthenticationInfo(
            credential_id=response["id"],
            new_counter=response.get("new_counter"),
            device_type="multi_device",
            backed_up=True,
        )
        return AuthenticationVerification(verified=True, authentication_info=info)


class FakeClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def passkey_config():
    return PasskeyConfig(
        rp_id="example.com",
        rp_name="Example",
        allowed_origins=["https://example.com"],
        challenge_ttl_seconds=300,
    )


@pytest.fixture
def fake_db():
    return FakeDatabaseManager()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeCeremonyEngine()


@pytest_asyncio.fixture
async def passkey_env(fake_db, clock, engine, passkey_config):
    """Orchestrator wired to real stores and Mongo collaborators over the in-memory database."""
    challenge_store = ChallengeStore(fake_db, collection_name="webauthn_challenges", clock=clock)
    credential_store = CredentialStore(fake_db, collection_name="webauthn_credentials", clock=clock)
    await challenge_store.ensure_indexes()
    await credential_store.ensure_indexes()

    request_ids = (f"r{i}" for i in itertools.count(1))
    orchestrator = PasskeyOrchestrator(
        db_manager=fake_db,
        challenge_store=challenge_store,
        credential_store=credential_store,
        ceremony_engine=engine,
        account_directory=MongoAccountDirectory(fake_db, collection_name="users"),
        event_recorder=MongoEventRecorder(fake_db, collection_name="domain_events"),
        config=passkey_config,
        clock=clock,
        request_id_factory=lambda: next(request_ids),
    )

    async def seed_user(email: str = "ada@example.com", username: str = "ada") -> str:
        result = await fake_db.get_collection("users").insert_one(
            {"email": email, "username": username, "hashed_password": "$2b$12$secret"}
        )
        return str(result.inserted_id)

    return SimpleNamespace(
        db=fake_db,
        clock=clock,
        engine=engine,
        config=passkey_config,
        challenges=challenge_store,
        credentials=credential_store,
        orchestrator=orchestrator,
        seed_user=seed_user,
        challenge_docs=lambda: fake_db.get_collection("webauthn_challenges").docs,
        credential_docs=lambda: fake_db.get_collection("webauthn_credentials").docs,
        events=lambda: [e["event_type"] for e in fake_db.get_collection("domain_events").docs],
    )


def registration_response(issued, credential_id: str = "cred-1", **extra) -> Dict[str, Any]:
    """Authenticator response that the fake engine accepts for ``issued``."""
    return {
        "id": credential_id,
        "rawId": credential_id,
        "challenge": issued.options["challenge"],
        "response": {"transports": ["internal", "hybrid"]},
        **extra,
    }


def authentication_response(issued, credential_id: str = "cred-1", **extra) -> Dict[str, Any]:
    return {"id": credential_id, "rawId": credential_id, "challenge": issued.options["challenge"], **extra}
