"""
auth/local.py -- LocalIdentityProvider: a self-hosted IdentityProvider.

Backs the coordinator with the SQLite UserStore for development, the CLI and
tests. Covers every credential the coordinator submits:

  EmailPassword   -> bcrypt check against the stored hash
  register()      -> new account with a unique email
  request_otp()   -> issue a 6-digit phone code, hand it to the delivery hook
  OtpCode         -> check code, consume challenge, find-or-create phone user
  FederatedToken  -> FederatedVerifier, then find / link / create the account

Errors are raised as ProviderError carrying provider-native wording. The
coordinator classifies them; nothing here is user-facing.

Blocking work (bcrypt, SQLite, JWKS fetch) runs in asyncio.to_thread so the
event loop is never held up by a password hash.

Security:
  [C1] Timing equalization: an unknown email still pays one bcrypt check
       against the dummy hash, so response time does not reveal whether an
       account exists.
  [C2] OTP guessing: each challenge allows max_otp_guesses wrong codes, then
       it is dead even if the right code arrives later.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError

from auth.connectivity import AlwaysOnline, ConnectivityCheck, ProbeConnectivity
from auth.coordinator import AuthCoordinator
from auth.errors import ProviderError
from auth.federated import FederatedVerifier
from auth.models import OtpChallenge, User
from auth.store import SessionStore
from auth.tokens import (
    burn_password_check,
    generate_challenge_id,
    generate_otp,
    hash_otp,
    hash_password,
    otp_matches,
    verify_password,
)
from auth.users import UserStore
from core.config import Settings, get_settings
from core.models import Credential, EmailPassword, FederatedToken, OtpCode, SubjectIdentity

logger = logging.getLogger("authcore.auth.local")

OtpDelivery = Callable[[str, str], None]

MAX_OTP_GUESSES = 5

# Provider-native messages. auth.errors classifies these by substring.
_NO_USER = "There is no user record corresponding to this identifier. The user may have been deleted."
_BAD_PASSWORD = "The password is invalid or the user does not have a password."
_EMAIL_TAKEN = "The email address is already in use by another account."
_DISABLED = "The user account has been disabled by an administrator."
_BAD_CODE = "The SMS verification code used to create the phone auth credential is invalid."
_EXPIRED_CODE = "The verification code has expired. Please request a new one."
_TOO_MANY_GUESSES = "Too many wrong codes for this verification. Please request a new one."


def _mask_phone(phone: str) -> str:
    return f"******{phone[-4:]}" if len(phone) > 4 else "****"


def log_delivery(phone: str, code: str) -> None:
    """Default OTP delivery: log that a code was issued.

    The code itself is only logged in DEBUG mode, where there is no SMS
    gateway and the developer needs it to finish the flow.
    """
    if get_settings().debug:
        logger.warning("DEBUG OTP for %s: %s", _mask_phone(phone), code)
    else:
        logger.info("OTP issued for %s", _mask_phone(phone))


def _identity(user: User) -> SubjectIdentity:
    return SubjectIdentity(
        subject_id=user.id or "",
        email=user.email,
        display_name=user.display_name,
        email_verified=user.email_verified,
        photo_ref=user.photo_ref,
    )


class LocalIdentityProvider:
    """IdentityProvider over a local UserStore.

    Usage:
        provider = LocalIdentityProvider(UserStore(settings.user_db_url))
        identity = await provider.verify(EmailPassword("a@b.co", "Secret1!"))
    """

    def __init__(
        self,
        users: UserStore,
        federated: FederatedVerifier | None = None,
        deliver_otp: OtpDelivery | None = None,
        otp_expiry_minutes: int | None = None,
        max_otp_guesses: int = MAX_OTP_GUESSES,
    ) -> None:
        self.users = users
        self.federated = federated
        self.deliver_otp = deliver_otp or log_delivery
        self.otp_expiry_minutes = (
            otp_expiry_minutes if otp_expiry_minutes is not None else get_settings().otp_expiry_minutes
        )
        self.max_otp_guesses = max_otp_guesses

    # ------------------------------------------------------------------
    # IdentityProvider
    # ------------------------------------------------------------------

    async def verify(self, credential: Credential) -> SubjectIdentity:
        if isinstance(credential, EmailPassword):
            return await asyncio.to_thread(self._verify_password, credential.email, credential.password)
        if isinstance(credential, OtpCode):
            return await asyncio.to_thread(self._verify_otp, credential.challenge_id, credential.code)
        if isinstance(credential, FederatedToken):
            return await asyncio.to_thread(self._verify_federated, credential)
        raise ProviderError(f"unsupported credential type: {type(credential).__name__}")

    async def register(self, name: str, email: str, password: str) -> SubjectIdentity:
        return await asyncio.to_thread(self._register, name, email, password)

    async def request_otp(self, phone: str) -> str:
        return await asyncio.to_thread(self._request_otp, phone)

    async def sign_out(self) -> None:
        # Sessions are held by the coordinator; nothing server-side to revoke.
        logger.debug("Local provider sign-out")

    # ------------------------------------------------------------------
    # Email / password
    # ------------------------------------------------------------------

    def _verify_password(self, email: str, password: str) -> SubjectIdentity:
        user = self.users.get_by_email(email)
        if user is None or user.hashed_password is None:
            burn_password_check(password)  # [C1]
            raise ProviderError(_NO_USER)
        if not verify_password(password, user.hashed_password):
            raise ProviderError(_BAD_PASSWORD)
        if not user.is_active:
            raise ProviderError(_DISABLED)
        self.users.update_last_login(user.id)
        return _identity(user)

    def _register(self, name: str, email: str, password: str) -> SubjectIdentity:
        if self.users.get_by_email(email) is not None:
            raise ProviderError(_EMAIL_TAKEN)
        user = User(email=email.lower(), display_name=name, hashed_password=hash_password(password))
        try:
            user.id = self.users.create_user(user)
        except IntegrityError as e:
            # Lost a race with a concurrent registration for the same email.
            raise ProviderError(_EMAIL_TAKEN) from e
        logger.info("Registered local account %s", user.id)
        return _identity(user)

    # ------------------------------------------------------------------
    # Phone OTP
    # ------------------------------------------------------------------

    def _request_otp(self, phone: str) -> str:
        code = generate_otp()
        challenge_id = generate_challenge_id()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=self.otp_expiry_minutes)
        self.users.create_challenge(
            OtpChallenge(
                id=challenge_id,
                phone=phone,
                code_hash=hash_otp(challenge_id, code),
                expires_at=expires_at.isoformat(),
            )
        )
        self.deliver_otp(phone, code)
        return challenge_id

    def _verify_otp(self, challenge_id: str, code: str) -> SubjectIdentity:
        challenge = self.users.get_challenge(challenge_id) if challenge_id else None
        if challenge is None:
            raise ProviderError(_BAD_CODE)
        if challenge.consumed or datetime.fromisoformat(challenge.expires_at) <= datetime.now(timezone.utc):
            raise ProviderError(_EXPIRED_CODE)
        if challenge.failed_attempts >= self.max_otp_guesses:
            raise ProviderError(_TOO_MANY_GUESSES)  # [C2]
        if not otp_matches(challenge_id, code, challenge.code_hash):
            failures = self.users.record_failed_guess(challenge_id)
            logger.info("Wrong OTP for challenge (%d/%d)", failures, self.max_otp_guesses)
            raise ProviderError(_BAD_CODE)
        if not self.users.consume_challenge(challenge_id):
            raise ProviderError(_EXPIRED_CODE)

        user = self.users.get_by_phone(challenge.phone)
        if user is None:
            user = User(email="", phone=challenge.phone)
            user.id = self.users.create_user(user)
            logger.info("Created phone account %s", user.id)
        if not user.is_active:
            raise ProviderError(_DISABLED)
        self.users.update_last_login(user.id)
        return _identity(user)

    # ------------------------------------------------------------------
    # Federated
    # ------------------------------------------------------------------

    def _verify_federated(self, credential: FederatedToken) -> SubjectIdentity:
        if self.federated is None:
            raise ProviderError("federated sign-in is not configured")
        if credential.provider != self.federated.provider:
            raise ProviderError(f"{credential.provider} sign-in is not configured")

        asserted = self.federated.verify(credential.provider_token)
        provider = self.federated.provider

        user = self.users.get_by_federated(provider, asserted.subject_id)
        if user is None:
            user = self.users.get_by_email(asserted.email)
            if user is not None:
                try:
                    self.users.link_federated(user.id, provider, asserted.subject_id)
                except ValueError as e:
                    raise ProviderError(_EMAIL_TAKEN) from e
                user.email_verified = True
                logger.info("Linked %s identity to account %s", provider, user.id)
            else:
                user = User(
                    email=asserted.email,
                    display_name=asserted.display_name,
                    email_verified=True,
                    photo_ref=asserted.photo_ref,
                    federated_provider=provider,
                    federated_subject=asserted.subject_id,
                )
                try:
                    user.id = self.users.create_user(user)
                except IntegrityError as e:
                    raise ProviderError(_EMAIL_TAKEN) from e
                logger.info("Created %s account %s", provider, user.id)

        if not user.is_active:
            raise ProviderError(_DISABLED)
        self.users.update_last_login(user.id)
        return _identity(user)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_coordinator(settings: Settings | None = None) -> tuple[AuthCoordinator, UserStore]:
    """Wire the coordinator to the local provider and the configured stores.

    Shared by the HTTP app and the CLI. Returns the UserStore too so the
    caller can close it (and purge challenges) on shutdown.
    """
    settings = settings or get_settings()
    users = UserStore(settings.user_db_url)
    federated = None
    if settings.oidc_client_id:
        federated = FederatedVerifier(settings.oidc_client_id, settings.oidc_discovery_url)
    provider = LocalIdentityProvider(users, federated=federated, otp_expiry_minutes=settings.otp_expiry_minutes)
    connectivity: ConnectivityCheck = AlwaysOnline()
    if settings.connectivity_probe:
        connectivity = ProbeConnectivity(settings.connectivity_probe_host, settings.connectivity_probe_port)
    coordinator = AuthCoordinator(
        provider,
        SessionStore(settings.session_db_url),
        connectivity=connectivity,
        settings=settings,
    )
    return coordinator, users
