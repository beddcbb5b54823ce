"""
auth/coordinator.py -- AuthCoordinator: the auth state machine.

Owns the single AuthState of the process and drives every credential action
through the same pipeline:

  connectivity -> sanitize/validate -> rate limit -> Loading + record attempt
  -> provider call (bounded by PROVIDER_TIMEOUT_SECONDS)
  -> success: clear limiter key, persist session, Authenticated
  -> failure: classify, Error(kind, user-safe message); session untouched

State machine:

  Loading          -> Authenticated | Unauthenticated | Error
  Unauthenticated  -> Loading | Error
  Error            -> Loading | Unauthenticated | Error
  Authenticated    -> Unauthenticated

Anything else raises InvalidTransition. Setting the current state again is a
no-op.

Concurrency:
  - Actions on different rate-limit keys run concurrently; nothing is held
    across a provider call. A duplicate submit with the same key while one
    is in flight does not start a second call; it waits for the in-flight
    one and returns the state it produced.
  - Outcomes apply in completion order, except that nothing overrides
    Authenticated: the first success wins and later results are discarded.
    A success landing after a sibling's Error re-enters Loading first.
  - SessionStore I/O runs in a worker thread under a short asyncio.Lock
    (_store_lock) that also covers the state change it belongs to.
  - sign_out() bumps an epoch counter; an in-flight action that finishes
    under an older epoch discards its result.
  - A cancelled provider call keeps its recorded attempt. When no other call
    is in flight the state moves back to Unauthenticated (or the Error it
    started from).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from auth.connectivity import AlwaysOnline, ConnectivityCheck
from auth.errors import MESSAGES, InvalidTransition, classify
from auth.limiter import RateLimiter, rate_limit_key
from auth.provider import IdentityProvider
from auth.store import SessionStore
from auth.tokens import generate_session_token
from core.config import Settings, get_settings
from core.models import (
    AUTHENTICATED,
    LOADING,
    UNAUTHENTICATED,
    AuthState,
    EmailPassword,
    EmailPasswordConfirm,
    ErrorKind,
    FederatedToken,
    OtpCode,
    PhoneNumber,
    Session,
    StateKind,
    SubjectIdentity,
)
from core.validator import (
    FieldKind,
    format_phone,
    mask_email,
    normalize_email,
    normalize_otp,
    normalize_phone,
    sanitize,
    sanitize_secret,
    validate,
)

logger = logging.getLogger("authcore.auth.coordinator")

StateListener = Callable[[AuthState], None]

_ALLOWED: dict[StateKind, frozenset[StateKind]] = {
    StateKind.LOADING: frozenset(
        {StateKind.AUTHENTICATED, StateKind.UNAUTHENTICATED, StateKind.ERROR}
    ),
    StateKind.UNAUTHENTICATED: frozenset({StateKind.LOADING, StateKind.ERROR}),
    StateKind.ERROR: frozenset({StateKind.LOADING, StateKind.UNAUTHENTICATED, StateKind.ERROR}),
    StateKind.AUTHENTICATED: frozenset({StateKind.UNAUTHENTICATED}),
}


class AuthCoordinator:
    """Single owner of AuthState, the current subject and the session.

    Usage:
        coordinator = AuthCoordinator(provider, SessionStore(url))
        await coordinator.start()
        state = await coordinator.sign_in(EmailPassword("a@b.co", "secret"))
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: SessionStore,
        limiter: RateLimiter | None = None,
        connectivity: ConnectivityCheck | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.limiter = limiter or RateLimiter()
        self.connectivity = connectivity or AlwaysOnline()
        self.settings = settings or get_settings()

        self._state: AuthState = LOADING
        self._subject: SubjectIdentity | None = None
        self._started = False
        self._listeners: list[StateListener] = []
        self._store_lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self._calls = 0  # provider calls in flight
        self._epoch = 0
        self._pending_challenge: str | None = None
        self._retry_after = 0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def current_state(self) -> AuthState:
        return self._state

    def current_subject(self) -> SubjectIdentity | None:
        return self._subject

    async def current_session(self) -> Session:
        async with self._store_lock:
            return await asyncio.to_thread(self.store.load)

    def pending_challenge(self) -> str | None:
        """Challenge id of the last successful request_otp(), until verified."""
        return self._pending_challenge

    def retry_after_seconds(self) -> int:
        """Seconds until the most recent RATE_LIMITED action may be retried."""
        return self._retry_after

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call listener on every transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def watch(self) -> AsyncIterator[AuthState]:
        """Yield the current state, then every transition."""
        queue: asyncio.Queue[AuthState] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            yield self._state
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def _set_state(self, new: AuthState) -> AuthState:
        old = self._state
        if new == old:
            return old
        if new.kind not in _ALLOWED[old.kind]:
            raise InvalidTransition(f"{old.kind.value} -> {new.kind.value}")
        self._state = new
        logger.debug("Auth state %s -> %s", old.kind.value, new.kind.value)
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                logger.exception("Auth state listener failed")
        return new

    def _fail(self, kind: ErrorKind, message: str | None = None) -> AuthState:
        return self._set_state(AuthState.error(kind, message or MESSAGES[kind]))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> AuthState:
        """Resolve the initial Loading state from the persisted session."""
        async with self._store_lock:
            if self._started:
                return self._state
            self._started = True
            try:
                session = await asyncio.to_thread(self.store.load)
            except SQLAlchemyError:
                logger.exception("Could not read persisted session")
                return self._fail(ErrorKind.UNKNOWN)
            if session.is_logged_in and session.user_id:
                self._subject = SubjectIdentity(subject_id=session.user_id, email=session.email or "")
                logger.info("Restored session for %s", mask_email(session.email))
                return self._set_state(AUTHENTICATED)
            return self._set_state(UNAUTHENTICATED)

    def _limits(self, action: str) -> tuple[int, int]:
        s = self.settings
        return {
            "login": (s.login_max_attempts, s.login_window_minutes),
            "signup": (s.signup_max_attempts, s.signup_window_minutes),
            "phone_auth": (s.phone_max_attempts, s.phone_window_minutes),
            "otp_verify": (s.otp_max_attempts, s.otp_window_minutes),
        }[action]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _submit(self, key: str, action: Callable[[], Awaitable[AuthState]]) -> AuthState:
        """Run action, coalescing duplicates of key. Other keys are not blocked."""
        await self.start()
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("Duplicate submit coalesced into in-flight action")
            await asyncio.shield(pending)
            return self._state
        if self._state.is_authenticated:
            return self._state
        if not self.connectivity.is_network_available():
            return self._fail(ErrorKind.NETWORK)

        pending = asyncio.get_running_loop().create_future()
        self._inflight[key] = pending
        try:
            return await action()
        finally:
            del self._inflight[key]
            pending.set_result(None)

    def _superseded(self, epoch: int) -> bool:
        """True when sign-out or a sibling's success has overtaken this action."""
        return self._epoch != epoch or self._state.is_authenticated

    async def _attempt(
        self,
        key: str | None,
        limits: tuple[int, int] | None,
        call: Callable[[], Awaitable[Any]],
        on_success: Callable[[Any, int], Awaitable[AuthState]],
        clear_on_success: bool = True,
    ) -> AuthState:
        """Rate limit, record, call the provider and resolve the outcome.

        key/limits of None skips the limiter entirely. on_success receives
        the provider result and the epoch the action started under.
        """
        if key is not None and limits is not None:
            max_attempts, window = limits
            if self.limiter.is_rate_limited(key, max_attempts, window):
                self._retry_after = self.limiter.retry_after(key, max_attempts, window)
                return self._fail(ErrorKind.RATE_LIMITED)

        prior = self._state
        self._set_state(LOADING)
        if key is not None:
            self.limiter.record_attempt(key)
        epoch = self._epoch

        self._calls += 1
        try:
            try:
                result = await asyncio.wait_for(call(), timeout=self.settings.provider_timeout_seconds)
            finally:
                self._calls -= 1
        except asyncio.CancelledError:
            if self._epoch == epoch and self._calls == 0 and self._state == LOADING:
                self._set_state(prior if prior.is_error else UNAUTHENTICATED)
            raise
        except Exception as exc:
            if self._superseded(epoch):
                return self._state
            kind, message = classify(exc)
            if kind is ErrorKind.UNKNOWN:
                logger.exception("Unexpected provider failure")
            else:
                logger.info("Provider call failed: %s", kind.value)
            return self._fail(kind, message)

        if self._superseded(epoch):
            logger.info("Discarding result of an action overtaken by sign-out or another sign-in")
            return self._state
        if key is not None and clear_on_success:
            self.limiter.clear(key)
        return await on_success(result, epoch)

    async def _commit(
        self,
        epoch: int,
        new_state: AuthState,
        fields: dict[str, Any],
        apply: Callable[[], None],
    ) -> AuthState:
        """Persist fields, run apply() and enter new_state, unless superseded.

        The write and the transition happen under _store_lock so sign-out's
        clear can never interleave between them.
        """
        async with self._store_lock:
            if self._superseded(epoch):
                logger.info("Discarding result of an action overtaken by sign-out or another sign-in")
                return self._state
            await asyncio.to_thread(self.store.save, **fields)
            apply()
            if new_state != self._state and new_state.kind not in _ALLOWED[self._state.kind]:
                # A sibling action already resolved the state; re-enter Loading.
                self._set_state(LOADING)
            return self._set_state(new_state)

    async def _establish(self, identity: SubjectIdentity, epoch: int) -> AuthState:
        """Persist a new session for identity and enter Authenticated."""

        def bind() -> None:
            self._subject = identity
            self._pending_challenge = None
            logger.info("Signed in %s", mask_email(identity.email) if identity.email else identity.subject_id)

        fields = {
            "is_logged_in": True,
            "user_id": identity.subject_id,
            "email": identity.email or None,
            "session_token": generate_session_token(),
        }
        return await self._commit(epoch, AUTHENTICATED, fields, bind)

    def _invalid(self, *checks) -> AuthState | None:
        """Return Error(VALIDATION) for the first failing (kind, value) check."""
        for kind, value in checks:
            result = validate(kind, value, india_only=self.settings.india_only_phone)
            if not result.ok:
                return self._fail(ErrorKind.VALIDATION, result.reason)
        return None

    # ------------------------------------------------------------------
    # Credential actions
    # ------------------------------------------------------------------

    async def sign_in(self, credential: EmailPassword) -> AuthState:
        """Email + password sign-in."""
        email = normalize_email(credential.email)
        password = sanitize_secret(credential.password)
        key = rate_limit_key("login", email)

        async def action() -> AuthState:
            failed = self._invalid((FieldKind.EMAIL, email), (FieldKind.LOGIN_PASSWORD, password))
            if failed is not None:
                return failed
            return await self._attempt(
                key,
                self._limits("login"),
                lambda: self.provider.verify(EmailPassword(email, password)),
                self._establish,
            )

        return await self._submit(key, action)

    async def sign_up(self, credential: EmailPasswordConfirm) -> AuthState:
        """Create an account and sign in to it.

        The PASSWORD rules require every character class at the minimum
        length, so any password that passes them already rates STRONG.
        """
        name = sanitize(credential.name)
        email = normalize_email(credential.email)
        password = sanitize_secret(credential.password)
        confirm = sanitize_secret(credential.confirm)
        key = rate_limit_key("signup", email)

        async def action() -> AuthState:
            failed = self._invalid(
                (FieldKind.NAME, name),
                (FieldKind.EMAIL, email),
                (FieldKind.PASSWORD, password),
            )
            if failed is not None:
                return failed
            if password != confirm:
                return self._fail(ErrorKind.VALIDATION, "Passwords do not match")
            return await self._attempt(
                key,
                self._limits("signup"),
                lambda: self.provider.register(name, email, password),
                self._establish,
            )

        return await self._submit(key, action)

    async def request_otp(self, credential: PhoneNumber) -> AuthState:
        """Ask the provider to send a code to the phone number.

        Success returns to Unauthenticated with pending_challenge() set.
        """
        india_only = self.settings.india_only_phone
        phone = normalize_phone(credential.raw, india_only=india_only)
        key = rate_limit_key("phone_auth", phone)

        async def challenged(challenge_id: str, epoch: int) -> AuthState:
            def hold() -> None:
                self._pending_challenge = challenge_id

            fields = {"phone": format_phone(phone, india_only=india_only)}
            return await self._commit(epoch, UNAUTHENTICATED, fields, hold)

        async def action() -> AuthState:
            failed = self._invalid((FieldKind.PHONE, phone))
            if failed is not None:
                return failed
            # The phone key is not cleared on success; it caps codes sent.
            return await self._attempt(
                key,
                self._limits("phone_auth"),
                lambda: self.provider.request_otp(phone),
                challenged,
                clear_on_success=False,
            )

        return await self._submit(key, action)

    async def verify_otp(self, credential: OtpCode) -> AuthState:
        """Complete phone sign-in with the code. challenge_id defaults to the pending one."""
        code = normalize_otp(credential.code)
        challenge_id = sanitize(credential.challenge_id) or self._pending_challenge or ""
        key = rate_limit_key("otp_verify", challenge_id)

        async def action() -> AuthState:
            failed = self._invalid((FieldKind.OTP, code))
            if failed is not None:
                return failed
            if not challenge_id:
                return self._fail(ErrorKind.VALIDATION, "Please request a verification code first")
            return await self._attempt(
                key,
                self._limits("otp_verify"),
                lambda: self.provider.verify(OtpCode(code, challenge_id)),
                self._establish,
            )

        return await self._submit(key, action)

    async def sign_in_federated(self, credential: FederatedToken) -> AuthState:
        """Sign in with a token from a federated provider's own sign-in UI.

        No per-identifier limit: the identifier is only known once the token
        has been verified.
        """
        token = credential.provider_token.strip() if credential.provider_token else ""
        provider = sanitize(credential.provider).lower()

        async def action() -> AuthState:
            if not token:
                return self._fail(ErrorKind.VALIDATION, "Sign-in token is missing")
            return await self._attempt(
                None,
                None,
                lambda: self.provider.verify(FederatedToken(token, provider)),
                self._establish,
            )

        return await self._submit(f"federated_{provider}", action)

    # ------------------------------------------------------------------
    # Session actions
    # ------------------------------------------------------------------

    async def sign_out(self) -> AuthState:
        """End the session. Local state is cleared even if the provider fails."""
        await self.start()
        self._epoch += 1
        try:
            await asyncio.wait_for(self.provider.sign_out(), timeout=self.settings.provider_timeout_seconds)
        except Exception as exc:
            logger.warning("Provider sign-out failed (%s); clearing local session anyway", type(exc).__name__)
        finally:
            await asyncio.shield(self._clear_local())
        logger.info("Signed out")
        return self._state

    async def _clear_local(self) -> None:
        async with self._store_lock:
            await asyncio.to_thread(self.store.clear)
            self._subject = None
            self._pending_challenge = None
            self._set_state(UNAUTHENTICATED)

    async def clear_error(self) -> AuthState:
        """Error -> Unauthenticated; any other state is left alone."""
        await self.start()
        if self._state.is_error:
            return self._set_state(UNAUTHENTICATED)
        return self._state
