"""
Data models for the Passkey Service.

This module contains the Pydantic models for stored challenges and
credentials, relying-party configuration and ceremony results.
"""

from .passkey_models import *

__all__ = [
    # Enums
    "ChallengeType",
    "ConsumedReason",
    # Configuration and request context
    "PasskeyConfig",
    "RequestContext",
    # Stored records
    "PasskeyChallenge",
    "PasskeyCredential",
    # Results
    "IssuedCeremony",
    "CeremonyResult",
]
