"""Unit tests for auth/coordinator.py -- the auth state machine.

The provider is an AsyncMock double; the limiter runs on a fake clock; the
session store is in-memory SQLite.

Covers:
- start() resolves Loading from the persisted session
- Validation failures reach Error(VALIDATION) before any provider call
- The sixth rapid sign-in is RATE_LIMITED without a provider call
- Success persists the session and enters Authenticated
- Sign-out clears the session even when the provider raises
- Timeouts, cancellation and duplicate submits
- Different keys in flight at once; the first success wins
- Session store I/O runs in worker threads
- Phone OTP and federated flows
- Observation via subscribe() and watch()
"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from auth.errors import InvalidTransition, ProviderError
from auth.limiter import RateLimiter
from core.config import get_settings
from core.models import (
    AUTHENTICATED,
    LOADING,
    UNAUTHENTICATED,
    EmailPassword,
    EmailPasswordConfirm,
    ErrorKind,
    FederatedToken,
    OtpCode,
    PhoneNumber,
    StateKind,
)

CREDS = EmailPassword("user@example.com", "Secret#123")


# ---------------------------------------------------------------------------
# Start-up
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_with_empty_store_is_unauthenticated(make_coordinator):
    coordinator = make_coordinator()
    assert coordinator.current_state() == LOADING
    assert await coordinator.start() == UNAUTHENTICATED
    assert coordinator.current_subject() is None


@pytest.mark.asyncio
async def test_start_restores_persisted_session(make_coordinator, session_store):
    session_store.save(is_logged_in=True, user_id="uid-alice", email="user@example.com", session_token="tok")
    coordinator = make_coordinator()
    assert await coordinator.start() == AUTHENTICATED
    assert coordinator.current_subject().subject_id == "uid-alice"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_weak_signup_password_fails_before_provider(make_coordinator, session_store, provider):
    coordinator = make_coordinator(provider)
    state = await coordinator.sign_up(EmailPasswordConfirm("Alice", "user@example.com", "abc123", "abc123"))
    assert state.is_error
    assert state.error_kind is ErrorKind.VALIDATION
    assert state.message == "Password must be at least 8 characters"
    provider.register.assert_not_awaited()
    assert session_store.load().is_logged_in is False


@pytest.mark.asyncio
async def test_signup_confirm_mismatch(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    state = await coordinator.sign_up(EmailPasswordConfirm("Alice", "user@example.com", "Secret#123", "Secret#124"))
    assert state.error_kind is ErrorKind.VALIDATION
    assert state.message == "Passwords do not match"
    provider.register.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_email_sign_in_fails_validation(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    state = await coordinator.sign_in(EmailPassword("not-an-email", "x"))
    assert state.error_kind is ErrorKind.VALIDATION
    provider.verify.assert_not_awaited()


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sixth_rapid_sign_in_is_rate_limited(make_coordinator, provider):
    provider.verify.side_effect = ProviderError("The password is invalid or the user does not have a password.")
    coordinator = make_coordinator(provider)

    for _ in range(5):
        state = await coordinator.sign_in(CREDS)
        assert state.error_kind is ErrorKind.CREDENTIAL_REJECTED

    state = await coordinator.sign_in(CREDS)
    assert state.error_kind is ErrorKind.RATE_LIMITED
    assert provider.verify.await_count == 5
    assert coordinator.retry_after_seconds() == 15 * 60


@pytest.mark.asyncio
async def test_email_case_variants_share_a_key(make_coordinator, provider):
    provider.verify.side_effect = ProviderError("There is no user record corresponding to this identifier.")
    coordinator = make_coordinator(provider)
    for email in ["User@Example.com", " user@example.com", "USER@EXAMPLE.COM", "user@example.com ", "user@example.com"]:
        await coordinator.sign_in(EmailPassword(email, "pw"))
    state = await coordinator.sign_in(EmailPassword("user@EXAMPLE.com", "pw"))
    assert state.error_kind is ErrorKind.RATE_LIMITED


@pytest.mark.asyncio
async def test_success_clears_attempts(make_coordinator, clock, provider):
    limiter = RateLimiter(clock=clock)
    provider.verify.side_effect = [ProviderError("password is invalid")] * 4 + [provider.verify.return_value]
    coordinator = make_coordinator(provider, limiter=limiter)
    for _ in range(5):
        state = await coordinator.sign_in(CREDS)
    assert state == AUTHENTICATED
    assert limiter.attempts("login_user@example.com", 15) == 0


# ---------------------------------------------------------------------------
# Success and sign-out
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_successful_sign_in_persists_session(make_coordinator, session_store, provider):
    coordinator = make_coordinator(provider)
    await coordinator.start()
    seen = []
    coordinator.subscribe(seen.append)

    state = await coordinator.sign_in(EmailPassword(" User@Example.com ", "Secret#123"))

    assert state == AUTHENTICATED
    assert seen == [LOADING, AUTHENTICATED]
    assert provider.verify.await_args.args[0] == EmailPassword("user@example.com", "Secret#123")
    session = session_store.load()
    assert session.is_logged_in is True
    assert session.user_id == "uid-alice"
    assert session.email == "user@example.com"
    assert session.session_token
    assert coordinator.current_subject() == provider.verify.return_value


@pytest.mark.asyncio
async def test_sign_in_while_authenticated_is_noop(make_coordinator, session_store, provider):
    coordinator = make_coordinator(provider)
    await coordinator.sign_in(CREDS)
    token = session_store.load().session_token

    assert await coordinator.sign_in(CREDS) == AUTHENTICATED
    assert provider.verify.await_count == 1
    assert session_store.load().session_token == token


@pytest.mark.asyncio
async def test_sign_out_clears_session_even_if_provider_raises(make_coordinator, session_store, provider):
    provider.sign_out.side_effect = ProviderError("internal error")
    coordinator = make_coordinator(provider)
    await coordinator.sign_in(CREDS)
    session_store.add_recently_viewed("p1")

    state = await coordinator.sign_out()

    assert state == UNAUTHENTICATED
    assert session_store.load().is_logged_in is False
    assert session_store.load().session_token is None
    assert session_store.recently_viewed() == []
    assert coordinator.current_subject() is None


@pytest.mark.asyncio
async def test_provider_failure_leaves_session_untouched(make_coordinator, session_store, provider):
    provider.verify.side_effect = ProviderError("The email address is badly formatted.")
    coordinator = make_coordinator(provider)
    session_store.save(phone="+91 98765 43210")

    state = await coordinator.sign_in(CREDS)

    assert state.error_kind is ErrorKind.VALIDATION
    assert state.message == "Please enter a valid email address"
    assert session_store.load().phone == "+91 98765 43210"
    assert session_store.load().is_logged_in is False


@pytest.mark.asyncio
async def test_unexpected_provider_exception_is_unknown(make_coordinator, provider):
    provider.verify.side_effect = KeyError("secret internal detail")
    coordinator = make_coordinator(provider)
    state = await coordinator.sign_in(CREDS)
    assert state.error_kind is ErrorKind.UNKNOWN
    assert "secret internal detail" not in state.message


@pytest.mark.asyncio
async def test_offline_fails_fast_with_network(make_coordinator, provider):
    offline = MagicMock()
    offline.is_network_available.return_value = False
    coordinator = make_coordinator(provider, connectivity=offline)
    state = await coordinator.sign_in(CREDS)
    assert state.error_kind is ErrorKind.NETWORK
    provider.verify.assert_not_awaited()


@pytest.mark.asyncio
async def test_clear_error(make_coordinator):
    coordinator = make_coordinator()
    await coordinator.sign_in(EmailPassword("", ""))
    assert coordinator.current_state().is_error
    assert await coordinator.clear_error() == UNAUTHENTICATED
    assert await coordinator.clear_error() == UNAUTHENTICATED


@pytest.mark.asyncio
async def test_disallowed_transition_raises(make_coordinator):
    coordinator = make_coordinator()
    await coordinator.sign_in(CREDS)
    with pytest.raises(InvalidTransition):
        coordinator._set_state(LOADING)


# ---------------------------------------------------------------------------
# Timeouts, cancellation, duplicates, concurrent keys
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_timeout_is_network_and_attempt_stays_recorded(make_coordinator, clock, gated_provider):
    limiter = RateLimiter(clock=clock)
    settings = get_settings().model_copy(update={"provider_timeout_seconds": 0.05})
    coordinator = make_coordinator(gated_provider[0], limiter=limiter, settings=settings)

    state = await coordinator.sign_in(CREDS)

    assert state.error_kind is ErrorKind.NETWORK
    assert limiter.attempts("login_user@example.com", 15) == 1


@pytest.mark.asyncio
async def test_cancelled_sign_in_returns_to_unauthenticated(make_coordinator, clock, gated_provider):
    limiter = RateLimiter(clock=clock)
    coordinator = make_coordinator(gated_provider[0], limiter=limiter)
    await coordinator.start()

    task = asyncio.create_task(coordinator.sign_in(CREDS))
    for _ in range(5):
        await asyncio.sleep(0)
    assert coordinator.current_state() == LOADING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert coordinator.current_state() == UNAUTHENTICATED
    assert limiter.attempts("login_user@example.com", 15) == 1


@pytest.mark.asyncio
async def test_duplicate_submit_is_coalesced(make_coordinator, gated_provider):
    provider, release = gated_provider
    coordinator = make_coordinator(provider)
    await coordinator.start()

    first = asyncio.create_task(coordinator.sign_in(CREDS))
    for _ in range(5):
        await asyncio.sleep(0)
    second = asyncio.create_task(coordinator.sign_in(EmailPassword("USER@example.com", "Secret#123")))
    for _ in range(5):
        await asyncio.sleep(0)
    release.set()

    assert await first == AUTHENTICATED
    assert await second == AUTHENTICATED
    assert provider.verify.await_count == 1


@pytest.mark.asyncio
async def test_sign_out_discards_in_flight_result(make_coordinator, session_store, gated_provider):
    provider, release = gated_provider
    coordinator = make_coordinator(provider)
    await coordinator.start()

    task = asyncio.create_task(coordinator.sign_in(CREDS))
    for _ in range(5):
        await asyncio.sleep(0)
    assert await coordinator.sign_out() == UNAUTHENTICATED
    release.set()

    assert await task == UNAUTHENTICATED
    assert session_store.load().is_logged_in is False


@pytest.mark.asyncio
async def test_other_key_runs_while_sign_in_is_in_flight(make_coordinator, gated_provider):
    provider, release = gated_provider
    coordinator = make_coordinator(provider)
    await coordinator.start()

    sign_in = asyncio.create_task(coordinator.sign_in(CREDS))
    for _ in range(5):
        await asyncio.sleep(0)
    assert provider.verify.await_count == 1

    state = await asyncio.wait_for(coordinator.request_otp(PhoneNumber("+91 98765 43210")), timeout=1)
    assert state == UNAUTHENTICATED
    assert provider.request_otp.await_count == 1
    assert coordinator.pending_challenge() == "challenge-1"
    assert not sign_in.done()

    release.set()
    assert await sign_in == AUTHENTICATED
    assert coordinator.current_state() == AUTHENTICATED


@pytest.mark.asyncio
async def test_concurrent_sign_ins_first_success_wins(make_coordinator, session_store, gated_provider):
    provider, release = gated_provider
    session_store.save = MagicMock(wraps=session_store.save)
    coordinator = make_coordinator(provider)
    await coordinator.start()

    first = asyncio.create_task(coordinator.sign_in(CREDS))
    second = asyncio.create_task(coordinator.sign_in(EmailPassword("other@example.com", "Secret#123")))
    for _ in range(5):
        await asyncio.sleep(0)
    assert provider.verify.await_count == 2
    assert coordinator.current_state() == LOADING

    release.set()
    assert await first == AUTHENTICATED
    assert await second == AUTHENTICATED
    assert session_store.save.call_count == 1
    assert session_store.load().user_id == "uid-alice"


@pytest.mark.asyncio
async def test_success_after_sibling_failure_reenters_loading(make_coordinator, provider):
    identity = provider.verify.return_value
    gates = {"bad@example.com": asyncio.Event(), "user@example.com": asyncio.Event()}

    async def verify(credential):
        await gates[credential.email].wait()
        if credential.email == "bad@example.com":
            raise ProviderError("The password is invalid or the user does not have a password.")
        return identity

    provider.verify.side_effect = verify
    coordinator = make_coordinator(provider)
    await coordinator.start()
    seen = []
    coordinator.subscribe(lambda state: seen.append(state.kind))

    good = asyncio.create_task(coordinator.sign_in(CREDS))
    bad = asyncio.create_task(coordinator.sign_in(EmailPassword("bad@example.com", "Wrong#123")))
    for _ in range(5):
        await asyncio.sleep(0)

    gates["bad@example.com"].set()
    assert (await bad).error_kind is ErrorKind.CREDENTIAL_REJECTED
    assert not good.done()

    gates["user@example.com"].set()
    assert await good == AUTHENTICATED
    assert seen == [StateKind.LOADING, StateKind.ERROR, StateKind.LOADING, StateKind.AUTHENTICATED]


@pytest.mark.asyncio
async def test_cancelling_one_call_keeps_loading_while_another_runs(make_coordinator, gated_provider):
    provider, release = gated_provider
    coordinator = make_coordinator(provider)
    await coordinator.start()

    first = asyncio.create_task(coordinator.sign_in(CREDS))
    second = asyncio.create_task(coordinator.sign_in(EmailPassword("other@example.com", "Secret#123")))
    for _ in range(5):
        await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert coordinator.current_state() == LOADING

    release.set()
    assert await second == AUTHENTICATED


@pytest.mark.asyncio
async def test_session_store_io_runs_off_the_event_loop(make_coordinator, session_store, provider):
    loop_thread = threading.get_ident()
    io_threads = []
    for name in ("load", "save", "clear"):

        def record(*args, _real=getattr(session_store, name), **kwargs):
            io_threads.append(threading.get_ident())
            return _real(*args, **kwargs)

        setattr(session_store, name, record)
    coordinator = make_coordinator(provider)

    await coordinator.start()
    await coordinator.sign_in(CREDS)
    assert (await coordinator.current_session()).user_id == "uid-alice"
    await coordinator.sign_out()

    assert len(io_threads) >= 4
    assert loop_thread not in io_threads


# ---------------------------------------------------------------------------
# Phone OTP and federated
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_phone_otp_flow(make_coordinator, session_store, provider):
    coordinator = make_coordinator(provider)

    state = await coordinator.request_otp(PhoneNumber("+91 98765 43210"))
    assert state == UNAUTHENTICATED
    assert coordinator.pending_challenge() == "challenge-1"
    provider.request_otp.assert_awaited_once_with("9876543210")
    assert session_store.load().phone == "+91 98765 43210"

    state = await coordinator.verify_otp(OtpCode("123 456"))
    assert state == AUTHENTICATED
    assert provider.verify.await_args.args[0] == OtpCode("123456", "challenge-1")
    assert coordinator.pending_challenge() is None


@pytest.mark.asyncio
async def test_fourth_otp_request_is_rate_limited(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    for _ in range(3):
        assert await coordinator.request_otp(PhoneNumber("9876543210")) == UNAUTHENTICATED
    state = await coordinator.request_otp(PhoneNumber("98765 43210"))
    assert state.error_kind is ErrorKind.RATE_LIMITED
    assert provider.request_otp.await_count == 3


@pytest.mark.asyncio
async def test_verify_otp_without_challenge_fails_validation(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    state = await coordinator.verify_otp(OtpCode("123456"))
    assert state.error_kind is ErrorKind.VALIDATION
    provider.verify.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_phone_fails_validation(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    state = await coordinator.request_otp(PhoneNumber("12345"))
    assert state.error_kind is ErrorKind.VALIDATION
    provider.request_otp.assert_not_awaited()


@pytest.mark.asyncio
async def test_federated_sign_in(make_coordinator, provider):
    coordinator = make_coordinator(provider)

    blank = await coordinator.sign_in_federated(FederatedToken("   "))
    assert blank.error_kind is ErrorKind.VALIDATION
    provider.verify.assert_not_awaited()

    assert await coordinator.sign_in_federated(FederatedToken("id-token")) == AUTHENTICATED
    assert provider.verify.await_args.args[0] == FederatedToken("id-token", "google")


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_watch_yields_current_then_transitions(make_coordinator):
    coordinator = make_coordinator()
    await coordinator.start()
    states = []

    async def consume():
        async for state in coordinator.watch():
            states.append(state)
            if len(states) == 3:
                break

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await coordinator.sign_in(CREDS)
    await asyncio.wait_for(task, timeout=1)

    assert [s.kind for s in states] == [StateKind.UNAUTHENTICATED, StateKind.LOADING, StateKind.AUTHENTICATED]


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications(make_coordinator):
    coordinator = make_coordinator()
    seen = []
    unsubscribe = coordinator.subscribe(seen.append)
    await coordinator.start()
    unsubscribe()
    await coordinator.sign_in(CREDS)
    assert seen == [UNAUTHENTICATED]


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_transitions(make_coordinator):
    coordinator = make_coordinator()
    coordinator.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))
    assert await coordinator.sign_in(CREDS) == AUTHENTICATED
