"""
Passkey ceremony orchestration.

The orchestrator sequences the challenge store, credential store, ceremony
engine, account directory and event recorder to run the two WebAuthn
ceremonies. Every ceremony call runs inside one MongoDB transaction that is
passed explicitly to each collaborator, so a failure at any step leaves no
consumed challenge and no half-written credential behind.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import uuid

from passkey_service.config import settings
from passkey_service.database import db_manager as default_db_manager
from passkey_service.managers.logging_manager import get_logger
from passkey_service.models.passkey_models import (
    CeremonyResult,
    ChallengeType,
    ConsumedReason,
    IssuedCeremony,
    PasskeyChallenge,
    PasskeyConfig,
    PasskeyCredential,
    RequestContext,
)
from passkey_service.services.webauthn.ceremony import CeremonyEngine, WebAuthnCeremonyEngine
from passkey_service.services.webauthn.challenge import ChallengeStore, utc_now
from passkey_service.services.webauthn.collaborators import (
    AccountDirectory,
    EventRecorder,
    MongoAccountDirectory,
    MongoEventRecorder,
)
from passkey_service.services.webauthn.credentials import CredentialStore
from passkey_service.services.webauthn.errors import (
    ConfigurationError,
    CounterRegressionError,
    CredentialNotFoundError,
    EnrollmentRequiredError,
    ExpiredChallengeError,
    NotFoundError,
    PasskeyError,
    ValidationError,
    VerificationError,
)
from passkey_service.utils.logging_utils import (
    log_auth_failure,
    log_auth_success,
    log_error_with_context,
    log_performance,
    log_security_event,
)

logger = get_logger(name="Passkey_Service_Orchestrator", prefix="[Passkey Orchestrator]")

USER_ENTITY = "user"

EVENT_REGISTRATION_STARTED = "user.passkey_registration_started"
EVENT_REGISTERED = "user.passkey_registered"
EVENT_AUTHENTICATION_STARTED = "user.passkey_authentication_started"
EVENT_AUTHENTICATED = "user.passkey_authenticated"
EVENT_REVOKED = "user.passkey_revoked"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _user_label(user: Dict[str, Any]) -> str:
    return user.get("username") or user.get("email") or str(user["id"])


class PasskeyOrchestrator:
    """
    Runs passkey registration and authentication ceremonies.

    Each ceremony is two calls: ``issue_*`` persists a one-time challenge and
    returns the options for the client; the completing call reads that
    challenge back under a lock, verifies the authenticator response and
    consumes the challenge in the same transaction.

    All collaborators are injected; ``clock`` and ``request_id_factory`` can be
    replaced in tests.
    """

    def __init__(
        self,
        *,
        db_manager,
        challenge_store: ChallengeStore,
        credential_store: CredentialStore,
        ceremony_engine: CeremonyEngine,
        account_directory: AccountDirectory,
        event_recorder: EventRecorder,
        config: PasskeyConfig,
        clock: Optional[Callable[[], datetime]] = None,
        request_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.db_manager = db_manager
        self.challenge_store = challenge_store
        self.credential_store = credential_store
        self.ceremony_engine = ceremony_engine
        self.account_directory = account_directory
        self.event_recorder = event_recorder
        self.config = config
        self._clock = clock or utc_now
        self._request_id_factory = request_id_factory or (lambda: str(uuid.uuid4()))

        self.logger = logger
        self.logger.debug("PasskeyOrchestrator initialized (rp_id=%s)", config.rp_id)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _ensure_configured(self) -> None:
        if not self.config.is_configured:
            raise ConfigurationError(
                "Passkey support is not configured",
                context={"rp_id_set": bool(self.config.rp_id), "origin_count": len(self.config.allowed_origins)},
            )

    async def _run(self, operation: str, callback, *, user_id: Optional[str], context: RequestContext):
        """Run one ceremony step in a transaction and log its failure as a security event."""
        try:
            return await self.db_manager.run_in_transaction(callback, operation=operation)
        except PasskeyError as e:
            log_auth_failure(
                event_type=f"webauthn_{operation}_failed",
                user_id=user_id,
                ip_address=context.ip_address,
                details={"error_code": e.error_code, "message": e.message, **e.context},
            )
            raise
        except Exception as e:
            log_error_with_context(e, context={"user_id": user_id}, operation=operation)
            raise

    async def _record_event(
        self,
        *,
        session,
        entity_id: str,
        event_type: str,
        payload: Dict[str, Any],
        performed_by: Optional[str],
    ) -> None:
        """Record a domain event; a recorder failure is logged and never fails the ceremony."""
        try:
            await self.event_recorder.record(
                entity_type=USER_ENTITY,
                entity_id=entity_id,
                event_type=event_type,
                payload=payload,
                performed_by=performed_by,
                session=session,
            )
        except Exception as e:
            self.logger.error("Failed to record %s for user %s: %s", event_type, entity_id, e)
            log_error_with_context(
                e, context={"event_type": event_type, "entity_id": entity_id}, operation="record_passkey_event"
            )

    async def _load_active_challenge(
        self, request_id: str, expected_type: ChallengeType, *, session
    ) -> PasskeyChallenge:
        challenge = await self.challenge_store.find_active(request_id, session=session, lock=True)
        if challenge is None or challenge.type != expected_type:
            raise ExpiredChallengeError(context={"request_id": request_id})
        return challenge

    async def _load_user(self, user_id: Optional[str], *, session) -> Dict[str, Any]:
        user = await self.account_directory.find_by_id(user_id, session=session) if user_id else None
        if not user:
            raise NotFoundError("User not found", context={"user_id": user_id})
        return user

    def _check_counter(self, credential: PasskeyCredential, new_counter: int, *, ip_address: Optional[str]) -> None:
        """Reject a signature counter that did not advance (possible cloned authenticator)."""
        stored = credential.signature_counter
        if new_counter > stored or (new_counter == 0 and stored == 0):
            return

        log_security_event(
            event_type="webauthn_counter_regression",
            user_id=credential.user_id,
            ip_address=ip_address,
            success=False,
            details={
                "credential_id": credential.credential_id,
                "stored_counter": stored,
                "reported_counter": new_counter,
            },
        )
        raise CounterRegressionError(
            "Passkey signature counter did not advance",
            context={"credential_id": credential.credential_id},
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @log_performance("issue_passkey_registration_options")
    async def issue_registration_options(
        self,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> IssuedCeremony:
        """
        Start a registration ceremony for an existing user.

        Args:
            user_id: User the new passkey will belong to
            metadata: Caller context stored with the challenge; ``friendly_name``
                or ``device_name`` becomes the credential's friendly name
            context: Caller IP and user agent, recorded for audit only

        Returns:
            IssuedCeremony: The request id and the options for the client

        Raises:
            ConfigurationError: If passkey support is not configured
            NotFoundError: If the user does not exist
        """
        self._ensure_configured()
        context = context or RequestContext()

        async def _issue(session) -> IssuedCeremony:
            user = await self._load_user(user_id, session=session)
            resolved_id = str(user["id"])
            existing = await self.credential_store.list_for_user(resolved_id, session=session)

            generated = self.ceremony_engine.generate_registration_options(
                rp_id=self.config.rp_id,
                rp_name=self.config.rp_name,
                user_id=resolved_id,
                user_name=_user_label(user),
                user_display_name=user.get("display_name") or _user_label(user),
                timeout_ms=self.config.timeout_ms,
                exclude_credentials=existing,
                resident_key=self.config.resident_key,
                user_verification=self.config.user_verification,
            )

            request_id = self._request_id_factory()
            await self.challenge_store.create(
                {
                    "request_id": request_id,
                    "user_id": resolved_id,
                    "email": user.get("email"),
                    "type": ChallengeType.REGISTRATION,
                    "challenge": generated.challenge,
                    "options_snapshot": generated.options,
                    "metadata": {
                        **(metadata or {}),
                        "issued_ip": context.ip_address,
                        "issued_user_agent": context.user_agent,
                    },
                    "expires_at": self._clock() + timedelta(seconds=self.config.challenge_ttl_seconds),
                },
                session=session,
            )

            await self._record_event(
                session=session,
                entity_id=resolved_id,
                event_type=EVENT_REGISTRATION_STARTED,
                payload={
                    "request_id": request_id,
                    "existing_credential_count": len(existing),
                    "ip_address": context.ip_address,
                    "user_agent": context.user_agent,
                },
                performed_by=resolved_id,
            )
            return IssuedCeremony(request_id=request_id, options=generated.options)

        issued = await self._run("registration_start", _issue, user_id=user_id, context=context)
        log_security_event(
            event_type="webauthn_registration_started",
            user_id=str(user_id),
            ip_address=context.ip_address,
            details={"request_id": issued.request_id},
        )
        return issued

    @log_performance("complete_passkey_registration")
    async def complete_registration(
        self,
        request_id: str,
        response: Dict[str, Any],
        context: Optional[RequestContext] = None,
    ) -> CeremonyResult:
        """
        Finish a registration ceremony and store the new credential.

        Raises:
            ConfigurationError: If passkey support is not configured
            ExpiredChallengeError: If the challenge is unknown, consumed, expired
                or was issued for authentication
            NotFoundError: If the challenge's user no longer exists
            VerificationError: If the attestation does not verify (400)
            CredentialAlreadyRegisteredError: If the authenticator is already registered
        """
        self._ensure_configured()
        context = context or RequestContext()

        async def _complete(session) -> CeremonyResult:
            challenge = await self._load_active_challenge(request_id, ChallengeType.REGISTRATION, session=session)
            user = await self._load_user(challenge.user_id, session=session)

            verification = self.ceremony_engine.verify_registration_response(
                response=response,
                expected_challenge=challenge.challenge,
                expected_origins=self.config.allowed_origins,
                expected_rp_id=self.config.rp_id,
                require_user_verification=True,
            )
            info = verification.registration_info
            if not verification.verified or info is None:
                raise VerificationError(
                    "Passkey registration could not be verified",
                    status_code=400,
                    context={"request_id": request_id, "reason": verification.failure_reason},
                )

            credential = await self.credential_store.create(
                {
                    "user_id": challenge.user_id,
                    "credential_id": info.credential_id,
                    "credential_public_key": info.public_key,
                    "signature_counter": info.counter,
                    "friendly_name": challenge.metadata.get("friendly_name") or challenge.metadata.get("device_name"),
                    "credential_device_type": info.device_type,
                    "credential_backed_up": info.backed_up,
                    "transports": info.transports,
                    "last_used_at": self._clock(),
                    "metadata": {
                        "aaguid": info.aaguid,
                        "completion_ip": context.ip_address,
                        "completion_user_agent": context.user_agent,
                        "request_metadata": challenge.metadata,
                    },
                },
                session=session,
            )

            await self.challenge_store.consume(
                request_id,
                reason=ConsumedReason.COMPLETED,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session=session,
            )

            await self._record_event(
                session=session,
                entity_id=challenge.user_id,
                event_type=EVENT_REGISTERED,
                payload={
                    "request_id": request_id,
                    "credential_id": credential.credential_id,
                    "device_type": credential.credential_device_type,
                    "backed_up": credential.credential_backed_up,
                    "ip_address": context.ip_address,
                    "user_agent": context.user_agent,
                },
                performed_by=challenge.user_id,
            )
            return CeremonyResult(user=user, credential=credential)

        result = await self._run("registration_complete", _complete, user_id=None, context=context)
        log_auth_success(
            event_type="webauthn_registration_completed",
            user_id=result.credential.user_id,
            ip_address=context.ip_address,
            details={"request_id": request_id, "credential_id": result.credential.credential_id},
        )
        return result

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @log_performance("issue_passkey_authentication_options")
    async def issue_authentication_options(
        self,
        email: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> IssuedCeremony:
        """
        Start an authentication ceremony for the account behind ``email``.

        Raises:
            ConfigurationError: If passkey support is not configured
            ValidationError: If the email is blank
            NotFoundError: If no account uses the email
            EnrollmentRequiredError: If the account has no active passkeys
        """
        self._ensure_configured()
        context = context or RequestContext()

        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required", error_code="EMAIL_REQUIRED")

        async def _issue(session) -> IssuedCeremony:
            user = await self.account_directory.find_by_email(normalized, session=session)
            if not user:
                raise NotFoundError("User not found", context={"email": normalized})
            user_id = str(user["id"])

            credentials = await self.credential_store.list_for_user(user_id, session=session)
            if not credentials:
                raise EnrollmentRequiredError(
                    "No passkeys are registered for this account",
                    context={"user_id": user_id},
                )

            generated = self.ceremony_engine.generate_authentication_options(
                rp_id=self.config.rp_id,
                timeout_ms=self.config.timeout_ms,
                allow_credentials=credentials,
                user_verification=self.config.user_verification,
            )

            request_id = self._request_id_factory()
            await self.challenge_store.create(
                {
                    "request_id": request_id,
                    "user_id": user_id,
                    "email": normalized,
                    "type": ChallengeType.AUTHENTICATION,
                    "challenge": generated.challenge,
                    "options_snapshot": generated.options,
                    "metadata": {"issued_ip": context.ip_address, "issued_user_agent": context.user_agent},
                    "expires_at": self._clock() + timedelta(seconds=self.config.challenge_ttl_seconds),
                },
                session=session,
            )

            await self._record_event(
                session=session,
                entity_id=user_id,
                event_type=EVENT_AUTHENTICATION_STARTED,
                payload={
                    "request_id": request_id,
                    "credential_count": len(credentials),
                    "ip_address": context.ip_address,
                    "user_agent": context.user_agent,
                },
                performed_by=user_id,
            )
            return IssuedCeremony(request_id=request_id, options=generated.options)

        issued = await self._run("authentication_start", _issue, user_id=None, context=context)
        log_security_event(
            event_type="webauthn_authentication_started",
            ip_address=context.ip_address,
            details={"request_id": issued.request_id},
        )
        return issued

    @log_performance("verify_passkey_authentication")
    async def verify_authentication(
        self,
        request_id: str,
        response: Dict[str, Any],
        context: Optional[RequestContext] = None,
    ) -> CeremonyResult:
        """
        Finish an authentication ceremony.

        Raises:
            ConfigurationError: If passkey support is not configured
            ExpiredChallengeError: If the challenge is unknown, consumed, expired
                or was issued for registration
            NotFoundError: If the challenge's user no longer exists
            CredentialNotFoundError: If the response names an unknown, revoked
                or foreign credential
            VerificationError: If the assertion does not verify (401)
            CounterRegressionError: If the signature counter did not advance
        """
        self._ensure_configured()
        context = context or RequestContext()

        async def _verify(session) -> CeremonyResult:
            challenge = await self._load_active_challenge(request_id, ChallengeType.AUTHENTICATION, session=session)
            user = await self._load_user(challenge.user_id, session=session)

            credential_id = response.get("id") or response.get("rawId")
            credential = (
                await self.credential_store.find_by_credential_id(credential_id, session=session)
                if credential_id
                else None
            )
            if credential is None or credential.user_id != str(user["id"]):
                raise CredentialNotFoundError(
                    "Passkey not recognised for this account",
                    context={"request_id": request_id, "credential_id": credential_id},
                )

            verification = self.ceremony_engine.verify_authentication_response(
                response=response,
                expected_challenge=challenge.challenge,
                expected_origins=self.config.allowed_origins,
                expected_rp_id=self.config.rp_id,
                credential=credential,
                require_user_verification=True,
            )
            if not verification.verified:
                raise VerificationError(
                    "Passkey authentication could not be verified",
                    status_code=401,
                    context={"request_id": request_id, "reason": verification.failure_reason},
                )

            info = verification.authentication_info
            new_counter = info.new_counter if info is not None else None
            if isinstance(new_counter, int) and new_counter >= 0:
                self._check_counter(credential, new_counter, ip_address=context.ip_address)
                credential = await self.credential_store.update_counter(credential.id, new_counter, session=session)
            else:
                credential = await self.credential_store.touch_usage(credential.id, session=session)

            await self.challenge_store.consume(
                request_id,
                reason=ConsumedReason.COMPLETED,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session=session,
            )

            await self._record_event(
                session=session,
                entity_id=credential.user_id,
                event_type=EVENT_AUTHENTICATED,
                payload={
                    "request_id": request_id,
                    "credential_id": credential.credential_id,
                    "ip_address": context.ip_address,
                    "user_agent": context.user_agent,
                },
                performed_by=credential.user_id,
            )
            return CeremonyResult(user=user, credential=credential)

        result = await self._run("authentication_complete", _verify, user_id=None, context=context)
        log_auth_success(
            event_type="webauthn_authentication_completed",
            user_id=result.credential.user_id,
            ip_address=context.ip_address,
            details={"request_id": request_id, "credential_id": result.credential.credential_id},
        )
        return result

    # ------------------------------------------------------------------
    # Credential management
    # ------------------------------------------------------------------

    async def list_credentials(self, user_id: str) -> List[PasskeyCredential]:
        return await self.credential_store.list_for_user(str(user_id))

    async def revoke_credential(
        self,
        user_id: str,
        passkey_id: str,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> PasskeyCredential:
        """
        Revoke one of the user's passkeys by its surrogate id.

        Raises:
            CredentialNotFoundError: If the passkey does not exist, is already
                revoked or belongs to another user
        """
        context = context or RequestContext()

        async def _revoke(session) -> PasskeyCredential:
            credential = await self.credential_store.find_by_id(passkey_id, session=session)
            if credential is None or credential.user_id != str(user_id):
                raise CredentialNotFoundError("Passkey not found", context={"passkey_id": passkey_id})

            revoked = await self.credential_store.revoke(credential.id, reason, session=session)
            await self._record_event(
                session=session,
                entity_id=revoked.user_id,
                event_type=EVENT_REVOKED,
                payload={
                    "credential_id": revoked.credential_id,
                    "reason": reason,
                    "ip_address": context.ip_address,
                },
                performed_by=str(user_id),
            )
            return revoked

        revoked = await self._run("credential_revoke", _revoke, user_id=str(user_id), context=context)
        log_security_event(
            event_type="webauthn_credential_revoked",
            user_id=str(user_id),
            ip_address=context.ip_address,
            details={"credential_id": revoked.credential_id, "reason": reason},
        )
        return revoked

    async def expire_stale_challenges(self) -> int:
        """Storage hygiene: mark lapsed challenges as expired. Expiry is still enforced on read."""
        count = await self.challenge_store.expire_stale()
        self.logger.info("Stale challenge sweep expired %d challenges", count)
        return count


def create_passkey_orchestrator(db_manager=None, config: Optional[PasskeyConfig] = None) -> PasskeyOrchestrator:
    """Wire an orchestrator with the MongoDB stores, default collaborators and py_webauthn engine."""
    db_manager = db_manager or default_db_manager
    challenge_store = ChallengeStore(db_manager)
    credential_store = CredentialStore(db_manager)
    db_manager.register_index_provider(challenge_store)
    db_manager.register_index_provider(credential_store)

    return PasskeyOrchestrator(
        db_manager=db_manager,
        challenge_store=challenge_store,
        credential_store=credential_store,
        ceremony_engine=WebAuthnCeremonyEngine(),
        account_directory=MongoAccountDirectory(db_manager),
        event_recorder=MongoEventRecorder(db_manager),
        config=config or settings.passkey_config,
    )
