from datetime import datetime, timedelta, timezone

import pytest

from taskdesk.storage.errors import ConstraintViolation
from taskdesk.storage.memory import MemoryStore

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def test_duplicate_email_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    store.mark_user_verified(user.id, NOW)
    otp, _ = store.supersede_and_create_otp(
        user.id, "$argon2id$hash", NOW + timedelta(minutes=10), NOW
    )
    token = store.create_refresh_token(user.id, "a" * 64, NOW + timedelta(days=7), NOW)
    store.record_activity("LOGIN", "AUTH", user_id=user.id, ip_address="10.0.0.1")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.is_verified is True
    assert reloaded_user.updated_at == NOW
    assert reloaded.find_latest_unused_otp(user.id).id == otp.id
    assert reloaded.find_refresh_token_by_hash("a" * 64).id == token.id
    [entry] = reloaded.list_activity(user.id)
    assert entry.ip_address == "10.0.0.1"


def test_sequence_continues_after_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("seq@example.com")
    first, _ = store.supersede_and_create_otp(user.id, "h1", NOW + timedelta(minutes=10), NOW)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    second, _ = reloaded.supersede_and_create_otp(
        user.id, "h2", NOW + timedelta(minutes=10), NOW
    )

    assert second.seq > first.seq
    assert reloaded.find_latest_unused_otp(user.id).id == second.id


def test_persist_disabled_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user("volatile@example.com")
    assert not (tmp_path / "state" / "memory_store.json").exists()


def test_mark_otp_used_is_compare_and_set(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("cas@example.com")
    otp, _ = store.supersede_and_create_otp(user.id, "h", NOW + timedelta(minutes=10), NOW)

    assert store.mark_otp_used(otp.id) is True
    assert store.mark_otp_used(otp.id) is False
    assert store.mark_otp_used("missing") is False


def test_supersede_and_create_counts_only_open_codes(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("inv@example.com")
    used, _ = store.supersede_and_create_otp(user.id, "h1", NOW + timedelta(minutes=10), NOW)
    store.mark_otp_used(used.id)
    _, superseded = store.supersede_and_create_otp(
        user.id, "h2", NOW + timedelta(minutes=10), NOW
    )
    assert superseded == 0
    latest, superseded = store.supersede_and_create_otp(
        user.id, "h3", NOW + timedelta(minutes=10), NOW
    )

    assert superseded == 1
    assert [r.is_used for r in store.list_otps(user.id)] == [True, True, False]
    assert store.find_latest_unused_otp(user.id).id == latest.id


def test_supersede_and_create_requires_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.supersede_and_create_otp("missing", "h", NOW + timedelta(minutes=10), NOW)
    assert store.otps == {}


def test_touch_refresh_token_checks_validity(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("touch@example.com")
    store.create_refresh_token(user.id, "live", NOW + timedelta(days=7), NOW)

    later = NOW + timedelta(hours=1)
    touched = store.touch_refresh_token("live", later)
    assert touched.last_used_at == later

    assert store.touch_refresh_token("live", NOW + timedelta(days=7)) is None
    assert store.touch_refresh_token("unknown", later) is None

    store.revoke_refresh_token("live", user.id)
    assert store.touch_refresh_token("live", later) is None


def test_revoke_refresh_token_checks_owner(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    owner = store.create_user("owner@example.com")
    other = store.create_user("other@example.com")
    store.create_refresh_token(owner.id, "tok", NOW + timedelta(days=7), NOW)

    assert store.revoke_refresh_token("tok", other.id) is False
    assert store.revoke_refresh_token("tok", owner.id) is True
    assert store.revoke_refresh_token("tok", owner.id) is False


def test_duplicate_refresh_hash_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("hash@example.com")
    store.create_refresh_token(user.id, "same", NOW + timedelta(days=7), NOW)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(user.id, "same", NOW + timedelta(days=7), NOW)


def test_revoke_all_scoped_to_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    alice = store.create_user("alice@example.com")
    bob = store.create_user("bob@example.com")
    store.create_refresh_token(alice.id, "a1", NOW + timedelta(days=7), NOW)
    store.create_refresh_token(alice.id, "a2", NOW + timedelta(days=7), NOW)
    store.create_refresh_token(bob.id, "b1", NOW + timedelta(days=7), NOW)

    assert store.revoke_all_refresh_tokens(alice.id) == 2
    assert store.find_refresh_token_by_hash("b1").is_revoked is False


def test_delete_expired_rows(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("sweep@example.com")
    store.supersede_and_create_otp(
        user.id, "old", NOW - timedelta(minutes=1), NOW - timedelta(minutes=11)
    )
    store.supersede_and_create_otp(user.id, "new", NOW + timedelta(minutes=9), NOW)
    store.create_refresh_token(user.id, "stale", NOW - timedelta(days=1), NOW - timedelta(days=8))
    store.create_refresh_token(user.id, "fresh", NOW + timedelta(days=1), NOW)

    assert store.delete_expired_otps(NOW) == 1
    assert store.delete_expired_refresh_tokens(NOW) == 1
    assert [r.otp_hash for r in store.list_otps(user.id)] == ["new"]
    assert store.find_refresh_token_by_hash("fresh") is not None
