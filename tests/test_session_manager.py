"""Tests for the passwordless login lifecycle."""

import threading

import pytest

from taskdesk.service import otp as otp_module
from taskdesk.service.audit import RequestMeta
from taskdesk.service.errors import (
    AuthenticationError,
    ExpiredError,
    InvalidError,
    NotFoundError,
    RevokedError,
    TransportError,
    ValidationError,
)
from taskdesk.service.session import normalize_email
from taskdesk.service.tokens import hash_refresh_token


def _login(session_manager, recording_email, email="alice@example.com"):
    session_manager.request_otp(email)
    code = recording_email.last_code(normalize_email(email))
    return session_manager.verify_otp(email, code)


class TestRequestOtp:
    """Requesting a login code."""

    def test_first_request_creates_unverified_user(
        self, session_manager, memory_store, recording_email
    ):
        result = session_manager.request_otp("Alice@Example.com ")
        assert result == {
            "message": "OTP sent successfully to your email",
            "email": "alice@example.com",
        }
        user = memory_store.get_user_by_email("alice@example.com")
        assert user is not None
        assert user.is_verified is False
        assert recording_email.sent[0][0] == "alice@example.com"

    def test_repeat_request_reuses_user(self, session_manager, memory_store):
        session_manager.request_otp("bob@example.com")
        session_manager.request_otp("BOB@example.com")
        assert len(memory_store.users) == 1

    def test_missing_at_sign_rejected(self, session_manager, memory_store):
        with pytest.raises(ValidationError):
            session_manager.request_otp("not-an-address")
        assert memory_store.users == {}

    def test_delivery_failure_propagates(self, session_manager, recording_email):
        """A send failure surfaces as a transport error, never as success."""
        recording_email.fail = True
        with pytest.raises(TransportError) as exc_info:
            session_manager.request_otp("carol@example.com")
        assert exc_info.value.status_code == 502

    def test_request_is_audited_with_client_meta(self, session_manager, memory_store):
        meta = RequestMeta(ip_address="203.0.113.9", user_agent="pytest")
        session_manager.request_otp("dave@example.com", meta)
        user = memory_store.get_user_by_email("dave@example.com")
        [entry] = memory_store.list_activity(user.id)
        assert entry.action == "OTP_REQUEST"
        assert entry.entity_type == "AUTH"
        assert entry.entity_id == user.id
        assert entry.ip_address == "203.0.113.9"
        assert entry.user_agent == "pytest"

    def test_concurrent_first_requests_share_one_user(self, session_manager, memory_store):
        """Racing first requests for one address end up with a single account."""
        barrier = threading.Barrier(4)
        errors = []

        def worker():
            barrier.wait()
            try:
                session_manager.request_otp("race@example.com")
            except Exception as exc:  # pragma: no cover - surfaced by assertion
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(memory_store.users) == 1


class TestVerifyOtp:
    """Exchanging a code for tokens."""

    def test_known_code_logs_in(self, session_manager, memory_store, monkeypatch):
        """A code sent to an address logs that user in and verifies them."""
        monkeypatch.setattr(otp_module, "generate_code", lambda: "482913")
        session_manager.request_otp("alice@example.com")

        result = session_manager.verify_otp("alice@example.com", "482913")

        assert result["token_type"] == "Bearer"
        assert result["expires_in"] == 900
        assert result["user"]["email"] == "alice@example.com"
        assert result["user"]["is_verified"] is True
        assert len(result["refresh_token"]) == 128
        assert memory_store.get_user_by_email("alice@example.com").is_verified is True

    def test_access_token_identifies_user(self, session_manager, recording_email):
        result = _login(session_manager, recording_email)
        context = session_manager.authenticate(f"Bearer {result['access_token']}")
        assert context.user_id == result["user"]["id"]
        assert context.email == "alice@example.com"

    def test_unknown_address(self, session_manager):
        with pytest.raises(NotFoundError) as exc_info:
            session_manager.verify_otp("ghost@example.com", "123456")
        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "User not found. Please request an OTP first."

    def test_wrong_code(self, session_manager, monkeypatch):
        monkeypatch.setattr(otp_module, "generate_code", lambda: "482913")
        session_manager.request_otp("alice@example.com")
        with pytest.raises(InvalidError):
            session_manager.verify_otp("alice@example.com", "000000")

    def test_code_reuse_fails(self, session_manager, recording_email):
        session_manager.request_otp("alice@example.com")
        code = recording_email.last_code()
        session_manager.verify_otp("alice@example.com", code)
        with pytest.raises(NotFoundError) as exc_info:
            session_manager.verify_otp("alice@example.com", code)
        assert exc_info.value.status_code == 400

    def test_expired_code(self, session_manager, recording_email, clock):
        session_manager.request_otp("alice@example.com")
        code = recording_email.last_code()
        clock.advance(minutes=11)
        with pytest.raises(ExpiredError):
            session_manager.verify_otp("alice@example.com", code)

    def test_second_request_invalidates_first(self, session_manager, recording_email):
        session_manager.request_otp("alice@example.com")
        first = recording_email.last_code()
        session_manager.request_otp("alice@example.com")
        second = recording_email.last_code()

        if first != second:
            with pytest.raises(InvalidError):
                session_manager.verify_otp("alice@example.com", first)
        session_manager.verify_otp("alice@example.com", second)

    def test_concurrent_verify_issues_one_session(
        self, session_manager, memory_store, recording_email
    ):
        """Two racing verifications of one code yield exactly one token pair."""
        session_manager.request_otp("alice@example.com")
        code = recording_email.last_code()
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                result = session_manager.verify_otp("alice@example.com", code)
                outcome = ("ok", result)
            except NotFoundError as exc:
                outcome = ("err", exc)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(kind for kind, _ in outcomes) == ["err", "ok"]
        assert len(memory_store.refresh_tokens) == 1

    def test_snapshot_holds_no_plaintext_secrets(
        self, session_manager, memory_store, recording_email
    ):
        """The on-disk state keeps only hashes of codes and refresh tokens."""
        session_manager.request_otp("alice@example.com")
        code = recording_email.last_code()
        login = session_manager.verify_otp("alice@example.com", code)

        snapshot = (memory_store.fs_root / "state" / "memory_store.json").read_text()

        assert login["refresh_token"] not in snapshot
        assert code not in snapshot
        assert hash_refresh_token(login["refresh_token"]) in snapshot

    def test_login_is_audited(self, session_manager, memory_store, recording_email):
        result = _login(session_manager, recording_email)
        actions = [e.action for e in memory_store.list_activity(result["user"]["id"])]
        assert set(actions) == {"OTP_REQUEST", "LOGIN"}

    def test_audit_failure_does_not_block_login(
        self, session_manager, memory_store, recording_email, monkeypatch
    ):
        def broken(*args, **kwargs):
            raise RuntimeError("activity table unavailable")

        monkeypatch.setattr(memory_store, "record_activity", broken)
        result = _login(session_manager, recording_email)
        assert result["access_token"]


class TestRefresh:
    """Trading a refresh token for a new access token."""

    def test_valid_refresh(self, session_manager, recording_email, memory_store, clock):
        login = _login(session_manager, recording_email)
        clock.advance(minutes=20)

        result = session_manager.refresh(login["refresh_token"])

        assert result["token_type"] == "Bearer"
        assert result["expires_in"] == 900
        assert result["access_token"] != login["access_token"]
        context = session_manager.authenticate(f"Bearer {result['access_token']}")
        assert context.user_id == login["user"]["id"]
        [record] = memory_store.refresh_tokens.values()
        assert record.last_used_at == clock()

    def test_refresh_token_is_not_rotated(self, session_manager, recording_email):
        login = _login(session_manager, recording_email)
        session_manager.refresh(login["refresh_token"])
        session_manager.refresh(login["refresh_token"])

    def test_unknown_token(self, session_manager):
        with pytest.raises(NotFoundError) as exc_info:
            session_manager.refresh("deadbeef" * 16)
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid refresh token"

    def test_empty_token(self, session_manager):
        with pytest.raises(NotFoundError):
            session_manager.refresh("")

    def test_revoked_token(self, session_manager, recording_email):
        login = _login(session_manager, recording_email)
        session_manager.logout(login["refresh_token"], login["user"]["id"])
        with pytest.raises(RevokedError) as exc_info:
            session_manager.refresh(login["refresh_token"])
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Refresh token has been revoked"

    def test_expired_token(self, session_manager, recording_email, clock):
        login = _login(session_manager, recording_email)
        clock.advance(days=7)
        with pytest.raises(ExpiredError) as exc_info:
            session_manager.refresh(login["refresh_token"])
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Refresh token has expired"

    def test_revoked_reported_before_expired(self, session_manager, recording_email, clock):
        login = _login(session_manager, recording_email)
        session_manager.revoke_all(login["user"]["id"])
        clock.advance(days=30)
        with pytest.raises(RevokedError):
            session_manager.refresh(login["refresh_token"])


class TestLogout:
    """Revoking sessions."""

    def test_logout_revokes_only_that_token(self, session_manager, recording_email):
        first = _login(session_manager, recording_email)
        second = _login(session_manager, recording_email)
        user_id = first["user"]["id"]

        result = session_manager.logout(first["refresh_token"], user_id)

        assert result == {"message": "Logged out successfully"}
        with pytest.raises(RevokedError):
            session_manager.refresh(first["refresh_token"])
        session_manager.refresh(second["refresh_token"])

    def test_logout_is_idempotent(self, session_manager, recording_email):
        login = _login(session_manager, recording_email)
        user_id = login["user"]["id"]
        session_manager.logout(login["refresh_token"], user_id)
        assert session_manager.logout(login["refresh_token"], user_id) == {
            "message": "Logged out successfully"
        }
        session_manager.logout("unknown-token", user_id)

    def test_logout_cannot_revoke_foreign_token(self, session_manager, recording_email):
        alice = _login(session_manager, recording_email, "alice@example.com")
        bob = _login(session_manager, recording_email, "bob@example.com")

        session_manager.logout(alice["refresh_token"], bob["user"]["id"])

        session_manager.refresh(alice["refresh_token"])

    def test_logout_requires_token(self, session_manager):
        with pytest.raises(ValidationError):
            session_manager.logout("", "user-1")

    def test_logout_all(self, session_manager, recording_email, memory_store):
        first = _login(session_manager, recording_email)
        second = _login(session_manager, recording_email)
        other = _login(session_manager, recording_email, "bob@example.com")
        user_id = first["user"]["id"]

        result = session_manager.logout_all(user_id)

        assert result == {"message": "Logged out from all sessions", "revoked": 2}
        for login in (first, second):
            with pytest.raises(RevokedError):
                session_manager.refresh(login["refresh_token"])
        session_manager.refresh(other["refresh_token"])
        assert session_manager.revoke_all(user_id) == 0
        [entry] = [
            e for e in memory_store.list_activity(user_id) if e.action == "LOGOUT_ALL"
        ]
        assert entry.new_values == {"revoked": 2}

    def test_logout_racing_refresh_leaves_token_revoked(
        self, session_manager, recording_email
    ):
        """A refresh overlapping a logout either wins cleanly or sees the revoke."""
        login = _login(session_manager, recording_email)
        token = login["refresh_token"]
        user_id = login["user"]["id"]
        barrier = threading.Barrier(2)
        outcomes = {}

        def do_refresh():
            barrier.wait()
            try:
                session_manager.refresh(token)
                outcomes["refresh"] = "ok"
            except RevokedError:
                outcomes["refresh"] = "revoked"

        def do_logout():
            barrier.wait()
            outcomes["logout"] = session_manager.logout(token, user_id)

        threads = [threading.Thread(target=do_refresh), threading.Thread(target=do_logout)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes["refresh"] in {"ok", "revoked"}
        assert outcomes["logout"] == {"message": "Logged out successfully"}
        with pytest.raises(RevokedError):
            session_manager.refresh(token)

    def test_access_token_survives_logout(self, session_manager, recording_email):
        """Access tokens are stateless and stay valid until they expire."""
        login = _login(session_manager, recording_email)
        session_manager.logout_all(login["user"]["id"])
        session_manager.authenticate(f"Bearer {login['access_token']}")


class TestAuthenticate:
    """Resolving the caller from the Authorization header."""

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Token x"])
    def test_missing_bearer(self, session_manager, header):
        with pytest.raises(AuthenticationError) as exc_info:
            session_manager.authenticate(header)
        assert exc_info.value.message == "Access token is required"

    def test_garbage_token(self, session_manager):
        with pytest.raises(InvalidError) as exc_info:
            session_manager.authenticate("Bearer not.a.jwt")
        assert exc_info.value.status_code == 401

    def test_expired_access_token(self, session_manager, recording_email, clock):
        login = _login(session_manager, recording_email)
        clock.advance(minutes=16)
        with pytest.raises(ExpiredError) as exc_info:
            session_manager.authenticate(f"Bearer {login['access_token']}")
        assert exc_info.value.status_code == 401

    def test_deleted_user(self, session_manager, recording_email, memory_store):
        login = _login(session_manager, recording_email)
        del memory_store.users[login["user"]["id"]]
        with pytest.raises(AuthenticationError):
            session_manager.authenticate(f"Bearer {login['access_token']}")

    def test_scheme_is_case_insensitive(self, session_manager, recording_email):
        login = _login(session_manager, recording_email)
        session_manager.authenticate(f"bearer {login['access_token']}")


class TestSweep:
    def test_sweep_reports_counts(self, session_manager, recording_email, clock):
        _login(session_manager, recording_email)
        clock.advance(days=40)
        assert session_manager.sweep_expired() == {"otps": 1, "refresh_tokens": 1}
        assert session_manager.sweep_expired() == {"otps": 0, "refresh_tokens": 0}


def test_normalize_email():
    assert normalize_email("  Alice@EXAMPLE.com ") == "alice@example.com"
    assert normalize_email("ｆｕｌｌ@example.com") == "full@example.com"
    assert normalize_email(None) == ""
