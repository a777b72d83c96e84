from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import EmailToken, EmailTokenKind, RefreshToken


def _refresh_for(user_id, *, expires_in=timedelta(days=1)):
    record = RefreshToken.first(user_id, datetime.now(timezone.utc) + expires_in, remember=True)
    record.token_hash = "hash-1"
    return record


def test_memory_store_persists_users_tokens_and_attempts(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist", "persist@example.com")
    store.save_password(user.id, "argon-hash", "argon2id")
    store.mark_email_verified(user.id)
    token = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.PASSWORD_RESET, "token-hash", timedelta(minutes=15))
    )
    record = store.create_refresh_token(_refresh_for(user.id))
    store.record_login_failure("Persist")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.username == "Persist"
    assert reloaded_user.email_verified is True
    assert reloaded.get_password_record(user.id) == ("argon-hash", "argon2id")
    reloaded_token = reloaded.get_email_token(token.id, EmailTokenKind.PASSWORD_RESET)
    assert reloaded_token.token_hash == "token-hash"
    assert reloaded_token.expires_at == token.expires_at
    reloaded_record = reloaded.get_refresh_token(record.id)
    assert reloaded_record.family_id == record.family_id
    assert reloaded_record.remember is True
    since = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert reloaded.count_login_failures("persist", since) == 1


def test_used_flag_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    token = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.EMAIL_VERIFY, "h", timedelta(hours=1))
    )
    assert store.consume_email_token(token.id, EmailTokenKind.EMAIL_VERIFY) == user.id

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_email_token(token.id, EmailTokenKind.EMAIL_VERIFY).used is True
    assert reloaded.consume_email_token(token.id, EmailTokenKind.EMAIL_VERIFY) is None


def test_usernames_are_unique_case_insensitively(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("alice", "alice@example.com")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("ALICE", "other@example.com")
    assert excinfo.value.detail == {"field": "username"}
    assert store.get_user_by_username("Alice").email == "alice@example.com"


def test_login_identifier_resolves_email_or_username(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")

    assert store.get_user_by_login("Alice@Example.com").id == user.id
    assert store.get_user_by_login("ALICE").id == user.id
    assert store.get_user_by_login("nobody") is None


def test_consume_rejects_wrong_kind_and_expired(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    token = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.PASSWORD_RESET, "h", timedelta(minutes=15))
    )

    assert store.consume_email_token(token.id, EmailTokenKind.EMAIL_VERIFY) is None
    store.email_tokens[token.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    assert store.consume_email_token(token.id, EmailTokenKind.PASSWORD_RESET) is None
    assert store.email_tokens[token.id].used is False


def test_rotation_is_conditional(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    first = store.create_refresh_token(_refresh_for(user.id))
    successor = first.successor()

    assert store.rotate_refresh_token(first.id, successor) is True
    assert store.get_refresh_token(first.id).revoked is True
    # A second rotation of the same token loses
    assert store.rotate_refresh_token(first.id, successor.successor()) is False
    assert store.get_refresh_token(successor.successor().id) is None


def test_family_and_user_revocation(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    first = store.create_refresh_token(_refresh_for(user.id))
    successor = first.successor()
    store.rotate_refresh_token(first.id, successor)
    other = store.create_refresh_token(_refresh_for(user.id))

    assert store.revoke_refresh_family(first.family_id) == 1
    assert store.get_refresh_token(other.id).revoked is False
    assert store.revoke_user_refresh_tokens(user.id) == 1
    assert store.get_refresh_token(other.id).revoked is True


def test_failed_snapshot_rolls_back(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    token = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.PASSWORD_RESET, "h", timedelta(minutes=15))
    )

    def _fail():
        raise StorageUnavailable("disk full", operation="persist")

    monkeypatch.setattr(store, "_persist_state", _fail)

    with pytest.raises(StorageUnavailable):
        store.consume_email_token(token.id, EmailTokenKind.PASSWORD_RESET)
    assert store.email_tokens[token.id].used is False


def test_purge_expired(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    live = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.PASSWORD_RESET, "h", timedelta(minutes=15))
    )
    dead = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.PASSWORD_RESET, "h", timedelta(minutes=15))
    )
    store.email_tokens[dead.id].expires_at = datetime.now(timezone.utc) - timedelta(days=2)
    expired_refresh = store.create_refresh_token(_refresh_for(user.id))
    store.refresh_tokens[expired_refresh.id].expires_at = datetime.now(timezone.utc) - timedelta(days=2)

    counts = store.purge_expired(datetime.now(timezone.utc) - timedelta(days=1))

    assert counts == {"email_tokens": 1, "refresh_tokens": 1, "login_attempts": 0}
    assert live.id in store.email_tokens
    assert dead.id not in store.email_tokens
    assert MemoryStore(fs_root=str(tmp_path)).get_refresh_token(expired_refresh.id) is None


def test_corrupt_snapshot_is_unavailable(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "memory_store.json").write_text("{not json")

    with pytest.raises(StorageUnavailable):
        MemoryStore(fs_root=str(tmp_path))


def test_purge_script_uses_memory_store(tmp_path, monkeypatch):
    from scripts.purge_expired_tokens import purge
    from sessionguard.config import reset_settings_cache

    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_settings_cache()
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    token = store.create_email_token(
        EmailToken.new(user.id, EmailTokenKind.EMAIL_VERIFY, "h", timedelta(minutes=15))
    )
    store.email_tokens[token.id].expires_at = datetime.now(timezone.utc) - timedelta(days=3)
    store._persist_state()

    counts = purge(grace_hours=24)

    assert counts["email_tokens"] == 1
    assert MemoryStore(fs_root=str(tmp_path)).email_tokens == {}


def test_update_user_renames_and_resets_verification(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    store.mark_email_verified(user.id)

    store.update_user(user.id, username="alicia")
    assert store.get_user(user.id).email_verified is True
    store.update_user(user.id, email="alicia@example.com")

    reloaded = MemoryStore(fs_root=str(tmp_path)).get_user(user.id)
    assert reloaded.username == "alicia"
    assert reloaded.email == "alicia@example.com"
    assert reloaded.email_verified is False
    assert store.get_user_by_username("alice") is None


def test_update_user_conflicts_leave_user_unchanged(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "alice@example.com")
    store.create_user("bob", "bob@example.com")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.update_user(user.id, username="BOB", email="new@example.com")
    assert excinfo.value.detail == {"field": "username"}
    with pytest.raises(ConstraintViolation) as excinfo:
        store.update_user(user.id, email="bob@example.com")
    assert excinfo.value.detail == {"field": "email"}

    assert store.get_user(user.id).email == "alice@example.com"
    assert store.update_user("missing-id", username="carol") is None
