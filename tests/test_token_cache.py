"""Tests for the client-side access token cache."""

import json
import os
import stat
import threading

import pytest

from sessionguard.client.token_cache import (
    FileTokenStorage,
    MemoryTokenStorage,
    TokenCache,
    TokenScope,
)


class TestTokenCacheScopes:
    def test_empty_cache_reads_none(self):
        cache = TokenCache()

        assert cache.get() is None
        assert cache.scope() is None

    def test_set_persistent_is_readable(self):
        cache = TokenCache()
        cache.set("tok-p", TokenScope.PERSISTENT)

        assert cache.get() == "tok-p"
        assert cache.scope() is TokenScope.PERSISTENT

    def test_set_ephemeral_is_readable(self):
        cache = TokenCache()
        cache.set("tok-e", TokenScope.EPHEMERAL)

        assert cache.get() == "tok-e"
        assert cache.scope() is TokenScope.EPHEMERAL

    def test_set_removes_token_from_other_scope(self):
        persistent = MemoryTokenStorage()
        ephemeral = MemoryTokenStorage()
        cache = TokenCache(persistent=persistent, ephemeral=ephemeral)

        cache.set("first", TokenScope.PERSISTENT)
        cache.set("second", TokenScope.EPHEMERAL)

        assert persistent.load() is None
        assert ephemeral.load() == "second"

        cache.set("third", TokenScope.PERSISTENT)
        assert persistent.load() == "third"
        assert ephemeral.load() is None

    def test_ephemeral_wins_when_both_populated(self):
        """Both scopes can be populated by storage outside this process."""
        cache = TokenCache(
            persistent=MemoryTokenStorage("old-persistent"),
            ephemeral=MemoryTokenStorage("current-ephemeral"),
        )

        assert cache.get() == "current-ephemeral"
        assert cache.scope() is TokenScope.EPHEMERAL

    def test_scope_accepts_string_values(self):
        cache = TokenCache()
        cache.set("tok", "persistent")

        assert cache.scope() is TokenScope.PERSISTENT

    @pytest.mark.parametrize("token", ["", None])
    def test_empty_token_rejected(self, token):
        cache = TokenCache()

        with pytest.raises(ValueError):
            cache.set(token, TokenScope.EPHEMERAL)

    def test_clear_empties_both_scopes(self):
        persistent = MemoryTokenStorage("p")
        ephemeral = MemoryTokenStorage("e")
        cache = TokenCache(persistent=persistent, ephemeral=ephemeral)

        cache.clear()

        assert cache.get() is None
        assert persistent.load() is None
        assert ephemeral.load() is None


class TestTokenCacheReplace:
    def test_replace_keeps_persistent_scope(self):
        cache = TokenCache()
        cache.set("old", TokenScope.PERSISTENT)

        scope = cache.replace("new")

        assert scope is TokenScope.PERSISTENT
        assert cache.get() == "new"
        assert cache.scope() is TokenScope.PERSISTENT

    def test_replace_keeps_ephemeral_scope(self):
        cache = TokenCache()
        cache.set("old", TokenScope.EPHEMERAL)

        assert cache.replace("new") is TokenScope.EPHEMERAL
        assert cache.get() == "new"

    def test_replace_on_empty_cache_defaults_to_ephemeral(self):
        cache = TokenCache()

        assert cache.replace("fresh") is TokenScope.EPHEMERAL
        assert cache.scope() is TokenScope.EPHEMERAL


class TestTokenCacheGeneration:
    def test_set_and_clear_advance_generation(self):
        cache = TokenCache()
        start = cache.generation

        cache.set("a", TokenScope.EPHEMERAL)
        assert cache.generation == start + 1
        cache.clear()
        assert cache.generation == start + 2

    def test_replace_does_not_advance_generation(self):
        cache = TokenCache()
        cache.set("old", TokenScope.PERSISTENT)
        generation = cache.generation

        assert cache.replace("new", generation=generation) is TokenScope.PERSISTENT
        assert cache.generation == generation

    def test_replace_after_clear_is_discarded(self):
        cache = TokenCache()
        cache.set("old", TokenScope.PERSISTENT)
        generation = cache.generation
        cache.clear()

        assert cache.replace("new", generation=generation) is None
        assert cache.get() is None

    def test_replace_after_new_login_is_discarded(self):
        cache = TokenCache()
        cache.set("old", TokenScope.EPHEMERAL)
        generation = cache.generation
        cache.set("login", TokenScope.PERSISTENT)

        assert cache.replace("new", generation=generation) is None
        assert cache.get() == "login"

    def test_stale_clear_leaves_new_login(self):
        cache = TokenCache()
        cache.set("old", TokenScope.EPHEMERAL)
        generation = cache.generation
        cache.set("login", TokenScope.EPHEMERAL)

        assert cache.clear(generation=generation) is False
        assert cache.get() == "login"

    def test_current_clear_succeeds(self):
        cache = TokenCache()
        cache.set("old", TokenScope.EPHEMERAL)

        assert cache.clear(generation=cache.generation) is True
        assert cache.get() is None


class TestTokenCacheThreadSafety:
    def test_write_visible_to_next_read_across_threads(self):
        cache = TokenCache()
        seen = []
        written = threading.Event()

        def _writer():
            cache.set("from-writer", TokenScope.EPHEMERAL)
            written.set()

        def _reader():
            written.wait(timeout=5)
            seen.append(cache.get())

        reader = threading.Thread(target=_reader)
        writer = threading.Thread(target=_writer)
        reader.start()
        writer.start()
        writer.join()
        reader.join()

        assert seen == ["from-writer"]

    def test_concurrent_sets_leave_exactly_one_scope_populated(self):
        persistent = MemoryTokenStorage()
        ephemeral = MemoryTokenStorage()
        cache = TokenCache(persistent=persistent, ephemeral=ephemeral)
        barrier = threading.Barrier(16)

        def _worker(index: int):
            scope = TokenScope.PERSISTENT if index % 2 else TokenScope.EPHEMERAL
            barrier.wait()
            for round_number in range(50):
                cache.set(f"tok-{index}-{round_number}", scope)

        threads = [threading.Thread(target=_worker, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        populated = [store for store in (persistent, ephemeral) if store.load()]
        assert len(populated) == 1


class TestFileTokenStorage:
    def test_save_and_load(self, tmp_path):
        storage = FileTokenStorage(tmp_path / "nested" / "token.json")

        storage.save("abc")

        assert storage.load() == "abc"
        assert json.loads((tmp_path / "nested" / "token.json").read_text()) == {
            "access_token": "abc"
        }

    @pytest.mark.skipif(os.name != "posix", reason="file modes are POSIX-only")
    def test_file_is_private(self, tmp_path):
        path = tmp_path / "token.json"
        FileTokenStorage(path).save("abc")

        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_file_loads_none(self, tmp_path):
        assert FileTokenStorage(tmp_path / "absent.json").load() is None

    def test_corrupt_file_loads_none(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{not json")

        assert FileTokenStorage(path).load() is None

    def test_delete_is_idempotent(self, tmp_path):
        storage = FileTokenStorage(tmp_path / "token.json")
        storage.save("abc")

        storage.delete()
        storage.delete()

        assert storage.load() is None

    def test_persistent_scope_survives_a_new_cache(self, tmp_path):
        path = tmp_path / "token.json"
        TokenCache(persistent=FileTokenStorage(path)).set("kept", TokenScope.PERSISTENT)

        restarted = TokenCache(persistent=FileTokenStorage(path))

        assert restarted.get() == "kept"
        assert restarted.scope() is TokenScope.PERSISTENT

    def test_ephemeral_login_removes_persisted_token(self, tmp_path):
        path = tmp_path / "token.json"
        cache = TokenCache(persistent=FileTokenStorage(path))
        cache.set("remembered", TokenScope.PERSISTENT)

        cache.set("this-session-only", TokenScope.EPHEMERAL)

        assert not path.exists()
        assert TokenCache(persistent=FileTokenStorage(path)).get() is None
