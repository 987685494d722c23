"""
WebAuthn ceremony engine.

The engine owns the cryptography: it generates the options handed to the
browser and verifies attestation and assertion responses. The orchestrator only
talks to the ``CeremonyEngine`` protocol, so the py_webauthn backed
implementation below can be swapped for a fake in tests.
"""

from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_service.managers.logging_manager import get_logger
from passkey_service.models.passkey_models import PasskeyCredential
from passkey_service.utils.logging_utils import log_security_event

logger = get_logger(name="Passkey_Service_Ceremony", prefix="[WebAuthn Ceremony]")

KNOWN_TRANSPORTS = {transport.value: transport for transport in AuthenticatorTransport}


@dataclass
class GeneratedOptions:
    """Options payload for the client plus the raw challenge embedded in it."""

    challenge: bytes
    options: Dict[str, Any]


@dataclass
class RegisteredCredentialInfo:
    credential_id: str  # base64url
    public_key: bytes
    counter: int = 0
    device_type: Optional[str] = None
    backed_up: bool = False
    transports: List[str] = field(default_factory=list)
    aaguid: Optional[str] = None


@dataclass
class RegistrationVerification:
    verified: bool
    registration_info: Optional[RegisteredCredentialInfo] = None
    failure_reason: Optional[str] = None


@dataclass
class AuthenticationInfo:
    credential_id: str
    new_counter: Optional[int] = None
    device_type: Optional[str] = None
    backed_up: Optional[bool] = None


@dataclass
class AuthenticationVerification:
    verified: bool
    authentication_info: Optional[AuthenticationInfo] = None
    failure_reason: Optional[str] = None


class CeremonyEngine(Protocol):
    def generate_registration_options(
        self,
        *,
        rp_id: str,
        rp_name: str,
        user_id: str,
        user_name: str,
        user_display_name: str,
        timeout_ms: int,
        exclude_credentials: Sequence[PasskeyCredential],
        resident_key: str,
        user_verification: str,
    ) -> GeneratedOptions: ...

    def verify_registration_response(
        self,
        *,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origins: List[str],
        expected_rp_id: str,
        require_user_verification: bool,
    ) -> RegistrationVerification: ...

    def generate_authentication_options(
        self,
        *,
        rp_id: str,
        timeout_ms: int,
        allow_credentials: Sequence[PasskeyCredential],
        user_verification: str,
    ) -> GeneratedOptions: ...

    def verify_authentication_response(
        self,
        *,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origins: List[str],
        expected_rp_id: str,
        credential: PasskeyCredential,
        require_user_verification: bool,
    ) -> AuthenticationVerification: ...


def credential_descriptors(credentials: Sequence[PasskeyCredential]) -> List[PublicKeyCredentialDescriptor]:
    """Build allow/exclude list entries; transport hints the library does not know are dropped."""
    descriptors = []
    for credential in credentials:
        transports = [KNOWN_TRANSPORTS[t] for t in credential.transports if t in KNOWN_TRANSPORTS]
        descriptors.append(
            PublicKeyCredentialDescriptor(
                id=base64url_to_bytes(credential.credential_id),
                transports=transports or None,
            )
        )
    return descriptors


def response_transports(response: Dict[str, Any]) -> List[str]:
    transports = (response.get("response") or {}).get("transports") or []
    return [t for t in transports if isinstance(t, str)]


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class WebAuthnCeremonyEngine:
    """CeremonyEngine backed by the py_webauthn library."""

    def generate_registration_options(
        self,
        *,
        rp_id: str,
        rp_name: str,
        user_id: str,
        user_name: str,
        user_display_name: str,
        timeout_ms: int,
        exclude_credentials: Sequence[PasskeyCredential],
        resident_key: str = "preferred",
        user_verification: str = "preferred",
    ) -> GeneratedOptions:
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=str(user_id).encode("utf-8"),
            user_name=user_name,
            user_display_name=user_display_name,
            timeout=timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement(resident_key),
                user_verification=UserVerificationRequirement(user_verification),
            ),
            exclude_credentials=credential_descriptors(exclude_credentials),
        )
        logger.debug("Generated registration options for user %s (%d excluded)", user_id, len(exclude_credentials))
        return GeneratedOptions(challenge=options.challenge, options=json.loads(options_to_json(options)))

    def verify_registration_response(
        self,
        *,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origins: List[str],
        expected_rp_id: str,
        require_user_verification: bool = True,
    ) -> RegistrationVerification:
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=expected_challenge,
                expected_rp_id=expected_rp_id,
                expected_origin=list(expected_origins),
                require_user_verification=require_user_verification,
            )
        except WebAuthnException as e:
            logger.warning("Registration response rejected: %s", e)
            log_security_event(
                event_type="webauthn_registration_response_rejected",
                success=False,
                details={"reason": str(e), "error_type": type(e).__name__},
            )
            return RegistrationVerification(verified=False, failure_reason=str(e))

        info = RegisteredCredentialInfo(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=verified.credential_public_key,
            counter=verified.sign_count,
            device_type=_enum_value(verified.credential_device_type),
            backed_up=bool(verified.credential_backed_up),
            transports=response_transports(response),
            aaguid=verified.aaguid,
        )
        return RegistrationVerification(verified=True, registration_info=info)

    def generate_authentication_options(
        self,
        *,
        rp_id: str,
        timeout_ms: int,
        allow_credentials: Sequence[PasskeyCredential],
        user_verification: str = "preferred",
    ) -> GeneratedOptions:
        options = generate_authentication_options(
            rp_id=rp_id,
            timeout=timeout_ms,
            allow_credentials=credential_descriptors(allow_credentials),
            user_verification=UserVerificationRequirement(user_verification),
        )
        return GeneratedOptions(challenge=options.challenge, options=json.loads(options_to_json(options)))

    def verify_authentication_response(
        self,
        *,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origins: List[str],
        expected_rp_id: str,
        credential: PasskeyCredential,
        require_user_verification: bool = True,
    ) -> AuthenticationVerification:
        try:
            # A current count of 0 disables the library's own counter check, so a
            # regressed count on a validly signed assertion comes back verified
            # with new_counter set and the caller applies the counter policy.
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=expected_challenge,
                expected_rp_id=expected_rp_id,
                expected_origin=list(expected_origins),
                credential_public_key=credential.credential_public_key,
                credential_current_sign_count=0,
                require_user_verification=require_user_verification,
            )
        except WebAuthnException as e:
            logger.warning("Authentication response rejected for credential %s: %s", credential.credential_id, e)
            log_security_event(
                event_type="webauthn_authentication_response_rejected",
                user_id=credential.user_id,
                success=False,
                details={"reason": str(e), "error_type": type(e).__name__, "credential_id": credential.credential_id},
            )
            return AuthenticationVerification(verified=False, failure_reason=str(e))

        info = AuthenticationInfo(
            credential_id=bytes_to_base64url(verified.credential_id),
            new_counter=verified.new_sign_count,
            device_type=_enum_value(verified.credential_device_type),
            backed_up=verified.credential_backed_up,
        )
        return AuthenticationVerification(verified=True, authentication_info=info)
