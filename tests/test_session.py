"""
Session and TokenRenewer tests: atomic token replacement, best effort revoke,
renewal decisions and the background thread lifecycle.
"""

import gc
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import token_payload
from Epic import KILL_SESSION_URL, OAUTH_TOKEN_URL, Session, TokenRenewer, TokenSet
from errors import DecodeError, InputError, ServiceError, TransportError


def iso_in(seconds):
    moment = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def make_session(transport, logger, expires_at="2099-01-01T00:00:00.000Z"):
    tokens = TokenSet.from_payload(token_payload("initial", expires_at=expires_at))
    return Session(transport, tokens, logger, "launcher-token", "game-token")


# =============================================================================
# REFRESH
# =============================================================================

def test_refresh_replaces_token_triple(transport, logger):
    transport.on("POST", OAUTH_TOKEN_URL, token_payload("next", expires_at="2099-06-01T00:00:00.000Z"))
    session = make_session(transport, logger)

    tokens = session.refresh()

    assert tokens.access_token == "access-next"
    assert session.snapshot() == TokenSet("access-next", "refresh-next", "2099-06-01T00:00:00.000Z",
                                           "acct-1", "game-client")
    call = transport.calls[0]
    assert call.headers["Authorization"] == "basic game-token"
    assert call.data == {"grant_type": "refresh_token", "refresh_token": "refresh-initial", "includePerms": "true"}


def test_failed_refresh_keeps_current_tokens(transport, logger):
    transport.on("POST", OAUTH_TOKEN_URL, ServiceError(400, "invalid_grant"))
    session = make_session(transport, logger)

    with pytest.raises(ServiceError):
        session.refresh()
    assert session.access_token == "access-initial"


def test_malformed_refresh_response_is_a_decode_error(transport, logger):
    transport.on("POST", OAUTH_TOKEN_URL, {"access_token": "only-this"})
    session = make_session(transport, logger)

    with pytest.raises(DecodeError):
        session.refresh()
    assert session.refresh_token == "refresh-initial"


def test_concurrent_refresh_never_interleaves(transport, logger):
    barrier = threading.Barrier(2)
    counter = {"n": 0}
    lock = threading.Lock()

    def respond(call):
        with lock:
            counter["n"] += 1
            suffix = "a" if counter["n"] == 1 else "b"
        barrier.wait(timeout=5)
        return token_payload(suffix, expires_at=f"2099-01-0{1 if suffix == 'a' else 2}T00:00:00.000Z")

    transport.on("POST", OAUTH_TOKEN_URL, respond)
    session = make_session(transport, logger)

    threads = [threading.Thread(target=session.refresh) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    snapshot = session.snapshot()
    assert (snapshot.access_token, snapshot.refresh_token, snapshot.expires_at) in [
        ("access-a", "refresh-a", "2099-01-01T00:00:00.000Z"),
        ("access-b", "refresh-b", "2099-01-02T00:00:00.000Z"),
    ]


# =============================================================================
# TERMINATE
# =============================================================================

def test_terminate_revokes_and_clears(transport, logger):
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    session = make_session(transport, logger)

    session.terminate()

    assert transport.calls[0].headers["Authorization"] == "bearer access-initial"
    assert not session.is_active
    assert (session.access_token, session.refresh_token, session.expires_at) == ("", "", "")


@pytest.mark.parametrize("failure", [ServiceError(500, "boom"), TransportError("connection reset")])
def test_terminate_clears_even_when_revoke_fails(transport, logger, failure):
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial", failure)
    session = make_session(transport, logger)

    session.terminate()

    assert not session.is_active
    assert session.refresh_token == ""


def test_terminate_is_idempotent(transport, logger):
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    session = make_session(transport, logger)

    session.terminate()
    session.terminate()

    assert len(transport.calls) == 1


def test_terminated_session_refuses_use(transport, logger):
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    session = make_session(transport, logger)
    session.terminate()

    with pytest.raises(InputError):
        session.authorization()
    with pytest.raises(InputError):
        session.refresh()
    assert len(transport.calls) == 1


def test_refresh_finishing_after_terminate_is_revoked(transport, logger):
    grant_sent = threading.Event()
    release = threading.Event()

    def respond(call):
        grant_sent.set()
        release.wait(5)
        return token_payload("late")

    transport.on("POST", OAUTH_TOKEN_URL, respond)
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-late")
    session = make_session(transport, logger)
    failures = []

    def refresh():
        try:
            session.refresh()
        except InputError as e:
            failures.append(e)

    thread = threading.Thread(target=refresh)
    thread.start()
    assert grant_sent.wait(5)
    session.terminate()
    release.set()
    thread.join(5)

    assert len(failures) == 1
    assert not session.is_active
    assert session.snapshot() == TokenSet("", "", "", "acct-1", "game-client")
    assert len(transport.calls_to("DELETE", f"{KILL_SESSION_URL}/access-late")) == 1


def test_start_renewal_refuses_terminated_session(transport, logger):
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    session = make_session(transport, logger)
    session.terminate()

    with pytest.raises(InputError):
        session.start_renewal(interval=0.01)
    assert session.renewer is None


def test_authorization_uses_current_token(transport, logger):
    session = make_session(transport, logger)
    assert session.authorization() == "bearer access-initial"


# =============================================================================
# RENEWER
# =============================================================================

def test_renewer_skips_tokens_far_from_expiry(transport, logger):
    session = make_session(transport, logger, expires_at=iso_in(3600))
    renewer = TokenRenewer(session, logger, margin=60)

    assert renewer.check(session) is False
    assert transport.calls == []


def test_renewer_refreshes_inside_margin(transport, logger):
    transport.on("POST", OAUTH_TOKEN_URL, token_payload("renewed"))
    session = make_session(transport, logger, expires_at=iso_in(30))
    renewer = TokenRenewer(session, logger, margin=60)

    assert renewer.check(session) is True
    assert session.access_token == "access-renewed"


def test_renewer_retries_after_failure(transport, logger):
    transport.on("POST", OAUTH_TOKEN_URL, ServiceError(503, "unavailable"), token_payload("renewed"))
    session = make_session(transport, logger, expires_at=iso_in(-5))
    renewer = TokenRenewer(session, logger, margin=60)

    assert renewer.check(session) is False
    assert session.access_token == "access-initial"
    assert renewer.check(session) is True
    assert session.access_token == "access-renewed"


def test_renewer_tolerates_unreadable_expiry(transport, logger):
    session = make_session(transport, logger, expires_at="not a timestamp")
    renewer = TokenRenewer(session, logger)

    assert renewer.check(session) is False
    assert transport.calls == []


def test_background_renewal_runs_until_terminated(transport, logger):
    refreshed = threading.Event()

    def respond(call):
        refreshed.set()
        return token_payload("renewed", expires_at=iso_in(3600))

    transport.on("POST", OAUTH_TOKEN_URL, respond)
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-renewed")
    session = make_session(transport, logger, expires_at=iso_in(10))

    renewer = session.start_renewal(interval=0.01, margin=60)
    assert session.start_renewal(interval=0.01, margin=60) is renewer
    assert refreshed.wait(5)

    session.terminate()
    renewer.join(2)

    assert renewer.stopped
    assert not renewer.is_alive
    assert not session.is_active


def test_background_renewal_keeps_running_after_failures(transport, logger):
    attempts = []

    def respond(call):
        attempts.append(call)
        raise ServiceError(503, "unavailable")

    transport.on("POST", OAUTH_TOKEN_URL, respond)
    transport.on("DELETE", f"{KILL_SESSION_URL}/access-initial")
    session = make_session(transport, logger, expires_at=iso_in(10))

    renewer = session.start_renewal(interval=0.01, margin=60)
    deadline = time.monotonic() + 5
    while len(attempts) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert len(attempts) >= 3
    assert renewer.is_alive
    session.terminate()
    renewer.join(2)
    assert not renewer.is_alive


def test_renewer_ends_when_session_is_discarded(transport, logger):
    session = make_session(transport, logger)
    renewer = session.start_renewal(interval=0.01, margin=60)

    del session
    gc.collect()
    renewer.join(2)

    assert not renewer.is_alive
