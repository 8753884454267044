"""Tests for SessionStore state, export/restore and concurrent access."""

import threading
import time

import pytest

from safeguard_access.config import TOKEN_ENV_VAR, TOKEN_EXPIRES_ENV_VAR
from safeguard_access.endpoint import EndpointCache
from safeguard_access.errors import AuthenticationError
from safeguard_access.session import (
    AuthModality,
    Credentials,
    Session,
    SessionStore,
    export_session,
    restore_session,
)


class TestSession:
    def test_unset_session_is_expired(self):
        session = Session()
        assert session.is_expired()
        assert session.remaining() <= 0

    def test_expires_at(self):
        session = Session(session_token="t", issued_at=1000.0, valid_for=300.0)
        assert session.expires_at() == 1300.0

    def test_expiry_boundary(self):
        session = Session(session_token="t", issued_at=1000.0, valid_for=300.0)
        assert not session.is_expired(now=1299.0)
        assert not session.is_expired(now=1300.0)
        assert session.is_expired(now=1300.1)

    def test_remaining_within_validity(self):
        session = Session(session_token="t", issued_at=1000.0, valid_for=300.0)
        assert 0 < session.remaining(now=1100.0) < 300.0
        assert session.remaining(now=1400.0) <= 0

    def test_credentials_repr_hides_secrets(self):
        creds = Credentials.for_password("admin", "hunter2")
        assert "hunter2" not in repr(creds)
        assert "admin" in repr(creds)


class TestSessionStore:
    def test_set_session_token(self):
        store = SessionStore()
        store.set_session_token("abc", valid_for=600)
        assert store.get_session_token() == "abc"
        assert not store.is_expired()
        assert 0 < store.remaining() <= 600

    def test_set_session_token_in_past_is_expired(self):
        store = SessionStore()
        store.set_session_token("abc", valid_for=10, issued_at=time.time() - 60)
        assert store.is_expired()
        assert store.remaining() <= 0

    def test_raw_token_is_separate(self):
        store = SessionStore()
        store.set_token("rsts")
        store.set_session_token("user", valid_for=60)
        assert store.get_token() == "rsts"
        assert store.get_session_token() == "user"

    def test_credentials_round_trip(self):
        store = SessionStore()
        creds = Credentials.for_certificate("/tmp/c.pfx", "pw")
        store.set_credentials(AuthModality.CERTIFICATE, creds)
        assert store.get_credentials() == (AuthModality.CERTIFICATE, creds)

    def test_record_login_replaces_everything(self):
        store = SessionStore()
        store.record_login("r1", "u1", 60, AuthModality.PASSWORD, Credentials.for_password("a", "b"))
        session = store.record_login("r2", "u2", 120, AuthModality.INTERACTIVE, Credentials())
        assert store.snapshot() is session
        assert session.session_token == "u2"
        assert session.modality is AuthModality.INTERACTIVE
        assert session.credentials == Credentials()

    def test_clear(self):
        store = SessionStore()
        store.set_session_token("abc", valid_for=600)
        store.clear()
        assert store.get_session_token() == ""
        assert store.is_expired()


class TestExportRestore:
    def test_export_then_restore(self, monkeypatch):
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        monkeypatch.delenv(TOKEN_EXPIRES_ENV_VAR, raising=False)
        source = SessionStore()
        source.record_login("r", "exported-token", 600, AuthModality.PASSWORD, Credentials.for_password("a", "b"))
        export_session(source)

        target = SessionStore()
        session = restore_session(target)
        assert session.session_token == "exported-token"
        assert session.modality is None
        assert 590 < target.remaining() <= 600

    def test_export_without_token(self):
        with pytest.raises(AuthenticationError):
            export_session(SessionStore())

    def test_restore_missing(self, monkeypatch):
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        with pytest.raises(AuthenticationError):
            restore_session(SessionStore())

    def test_restore_invalid_expiry(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV_VAR, "tok")
        monkeypatch.setenv(TOKEN_EXPIRES_ENV_VAR, "tomorrow")
        with pytest.raises(AuthenticationError, match="invalid"):
            restore_session(SessionStore())

    def test_restore_expired(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV_VAR, "tok")
        monkeypatch.setenv(TOKEN_EXPIRES_ENV_VAR, str(int(time.time()) - 10))
        with pytest.raises(AuthenticationError, match="expired"):
            restore_session(SessionStore())


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

WRITES = 2000
READS = 4000


def _writer(store: SessionStore, cache: EndpointCache, errors: list) -> None:
    try:
        for i in range(1, WRITES + 1):
            # Token and lifetime are paired so readers can detect torn reads
            store.record_login(f"rsts-{i}", f"token-{i}", float(i), AuthModality.PASSWORD,
                               Credentials.for_password(f"user-{i}", "pw"))
            cache.write(f"https://node{i}.example.com:{1000 + i}", 10)
    except Exception as e:  # pragma: no cover - surfaced by the assertion below
        errors.append(e)


def _check_session(session: Session, errors: list) -> None:
    if not session.session_token:
        errors.append("empty token")
        return
    n = int(session.session_token.split("-")[1])
    if session.valid_for != float(n) or session.token != f"rsts-{n}" or session.credentials.username != f"user-{n}":
        errors.append(f"torn session: {session!r} {session.session_token}")


def _check_origin(cache: EndpointCache, errors: list) -> None:
    origin = cache.snapshot()
    if not origin.url:
        errors.append("empty origin")
        return
    n = int(origin.host_label[len("node"):])
    if origin.port != str(1000 + n):
        errors.append(f"torn origin: {origin}")


def _reader_store_first(store: SessionStore, cache: EndpointCache, errors: list) -> None:
    for _ in range(READS):
        _check_session(store.snapshot(), errors)
        _check_origin(cache, errors)
        if store.remaining() > WRITES + 1:
            errors.append("remaining exceeds validity")


def _reader_cache_first(store: SessionStore, cache: EndpointCache, errors: list) -> None:
    for _ in range(READS):
        _check_origin(cache, errors)
        cache.is_expired()
        _check_session(store.snapshot(), errors)


class TestConcurrency:
    def test_no_torn_reads_or_deadlock(self):
        store = SessionStore()
        cache = EndpointCache("leader")
        # Seed both so readers never legitimately see an empty value
        store.record_login("rsts-1", "token-1", 1.0, AuthModality.PASSWORD, Credentials.for_password("user-1", "pw"))
        cache.write("https://node1.example.com:1001", 10)

        errors: list = []
        threads = [threading.Thread(target=_writer, args=(store, cache, errors)) for _ in range(2)]
        threads += [threading.Thread(target=_reader_store_first, args=(store, cache, errors)) for _ in range(4)]
        threads += [threading.Thread(target=_reader_cache_first, args=(store, cache, errors)) for _ in range(4)]

        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert not any(t.is_alive() for t in threads), "threads deadlocked"
        assert errors == []
