"""
WebAuthn passkey services.

Challenge and credential storage, the py_webauthn ceremony engine and the
orchestrator that runs registration and authentication ceremonies.
"""

from .ceremony import CeremonyEngine, GeneratedOptions, WebAuthnCeremonyEngine
from .challenge import ChallengeStore
from .collaborators import AccountDirectory, EventRecorder, MongoAccountDirectory, MongoEventRecorder
from .credentials import CredentialStore
from .errors import (
    ConfigurationError,
    CounterRegressionError,
    CredentialAlreadyRegisteredError,
    CredentialNotFoundError,
    EnrollmentRequiredError,
    ExpiredChallengeError,
    NotFoundError,
    PasskeyError,
    ValidationError,
    VerificationError,
)
from .orchestrator import PasskeyOrchestrator, create_passkey_orchestrator

__all__ = [
    # Stores
    "ChallengeStore",
    "CredentialStore",
    # Ceremony engine
    "CeremonyEngine",
    "GeneratedOptions",
    "WebAuthnCeremonyEngine",
    # Collaborators
    "AccountDirectory",
    "EventRecorder",
    "MongoAccountDirectory",
    "MongoEventRecorder",
    # Orchestration
    "PasskeyOrchestrator",
    "create_passkey_orchestrator",
    # Errors
    "PasskeyError",
    "ConfigurationError",
    "ValidationError",
    "CredentialAlreadyRegisteredError",
    "NotFoundError",
    "ExpiredChallengeError",
    "EnrollmentRequiredError",
    "CredentialNotFoundError",
    "VerificationError",
    "CounterRegressionError",
]
