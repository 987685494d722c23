"""
Pydantic models for the passkey (WebAuthn) subsystem.

This module contains the persisted challenge and credential records, the
relying-party configuration, and the result shapes the orchestrator hands back
to its callers.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChallengeType(str, Enum):
    """Ceremony a challenge was issued for."""

    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class ConsumedReason(str, Enum):
    """Terminal state recorded when a challenge is consumed."""

    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class RequestContext(BaseModel):
    """Caller context used for audit metadata only, never for authorization."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class PasskeyConfig(BaseModel):
    """Relying-party configuration for passkey ceremonies."""

    rp_id: Optional[str] = None
    rp_name: str = "Passkey Service"
    allowed_origins: List[str] = Field(default_factory=list)
    challenge_ttl_seconds: int = Field(300, ge=1)
    user_verification: str = "preferred"
    resident_key: str = "preferred"

    @property
    def is_configured(self) -> bool:
        return bool(self.rp_id) and bool(self.allowed_origins)

    @property
    def timeout_ms(self) -> int:
        return self.challenge_ttl_seconds * 1000


class PasskeyChallenge(BaseModel):
    """One-time challenge issued at the start of a ceremony."""

    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    request_id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    type: ChallengeType
    challenge: bytes
    options_snapshot: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    consumed_reason: Optional[ConsumedReason] = None
    consumed_ip: Optional[str] = None
    consumed_user_agent: Optional[str] = None
    created_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.consumed_at is None and now < self.expires_at

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PasskeyChallenge":
        data = dict(doc)
        data.pop("_id", None)
        if data.get("user_id") is not None:
            data["user_id"] = str(data["user_id"])
        return cls(**data)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")


class PasskeyCredential(BaseModel):
    """Authenticator credential registered for a user."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    credential_id: str  # base64url, unique across the whole store
    credential_public_key: bytes
    signature_counter: int = Field(0, ge=0)
    friendly_name: Optional[str] = None
    credential_device_type: Optional[str] = None
    credential_backed_up: bool = False
    transports: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("transports", mode="before")
    @classmethod
    def unique_transports(cls, v):
        if not v:
            return []
        seen: List[str] = []
        for transport in v:
            if transport not in seen:
                seen.append(transport)
        return seen

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PasskeyCredential":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        data["user_id"] = str(data["user_id"])
        return cls(**data)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python", exclude={"id"})

    def to_public_dict(self) -> Dict[str, Any]:
        """Credential view safe to hand to clients (no key material)."""
        return self.model_dump(mode="json", exclude={"credential_public_key", "metadata"})


class IssuedCeremony(BaseModel):
    """Result of issuing registration or authentication options."""

    request_id: str
    options: Dict[str, Any]


class CeremonyResult(BaseModel):
    """Result of a completed registration or authentication ceremony."""

    user: Dict[str, Any]
    credential: PasskeyCredential
