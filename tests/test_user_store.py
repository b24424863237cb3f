"""Unit tests for the file-backed credential store.

Tests for:
- Registration, normalization and duplicate rejection
- Login and constant-cost failure paths
- Persistence to users.json and reload
- Rollback when the document cannot be written
- Concurrent registrations
"""

import json
import threading

import pytest

from chatlocal.storage.errors import InvalidCredentialsError, UserExistsError
from chatlocal.storage.users import ReadWriteLock, UserStore


@pytest.fixture
def store(tmp_path):
    return UserStore(tmp_path, time_cost=1, memory_cost=1024, parallelism=1)


class TestRegister:
    def test_register_then_login_returns_same_user(self, store):
        user = store.register("alice@example.com", "correct horse")

        assert store.login("alice@example.com", "correct horse").id == user.id

    def test_username_is_normalized(self, store):
        user = store.register("  Alice@Example.COM ", "correct horse")

        assert user.username == "alice@example.com"
        assert store.get_by_username("ALICE@example.com").id == user.id
        assert store.login(" alice@EXAMPLE.com", "correct horse").id == user.id

    def test_password_is_not_stored_in_plaintext(self, store, tmp_path):
        store.register("alice@example.com", "correct horse")

        raw = (tmp_path / "users.json").read_text()
        assert "correct horse" not in raw
        assert json.loads(raw)[0]["hash"].startswith("$argon2id$")

    def test_duplicate_username_conflicts_and_keeps_original(self, store):
        original = store.register("alice@example.com", "correct horse")

        with pytest.raises(UserExistsError):
            store.register("ALICE@example.com", "another password")

        assert store.count() == 1
        assert store.login("alice@example.com", "correct horse").id == original.id
        with pytest.raises(InvalidCredentialsError):
            store.login("alice@example.com", "another password")

    @pytest.mark.parametrize("username,password", [("", "long enough"), ("   ", "long enough"), ("bob@example.com", "short")])
    def test_rejects_invalid_registration(self, store, username, password):
        with pytest.raises(InvalidCredentialsError):
            store.register(username, password)

        assert store.count() == 0


class TestLogin:
    def test_wrong_password_fails(self, store):
        store.register("alice@example.com", "correct horse")

        with pytest.raises(InvalidCredentialsError):
            store.login("alice@example.com", "wrong horse")

    def test_unknown_user_fails_with_same_error(self, store):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            store.login("nobody@example.com", "whatever123")

        assert exc_info.value.message == "invalid credentials"


class TestPersistence:
    def test_users_survive_reload(self, store, tmp_path):
        user = store.register("alice@example.com", "correct horse")

        reloaded = UserStore(tmp_path, time_cost=1, memory_cost=1024, parallelism=1)

        assert reloaded.count() == 1
        assert reloaded.get_by_id(user.id).username == "alice@example.com"
        assert reloaded.login("alice@example.com", "correct horse").id == user.id

    def test_failed_write_rolls_back_registration(self, store, monkeypatch):
        def boom():
            raise OSError("disk full")

        monkeypatch.setattr(store, "_persist", boom)

        with pytest.raises(OSError):
            store.register("alice@example.com", "correct horse")

        assert store.count() == 0
        assert store.get_by_username("alice@example.com") is None

    def test_lookup_of_unknown_id_is_none(self, store):
        assert store.get_by_id("missing") is None


class TestConcurrency:
    def test_concurrent_registrations_are_all_persisted(self, store, tmp_path):
        names = [f"user{i}@example.com" for i in range(8)]
        errors = []

        def worker(name):
            try:
                store.register(name, "correct horse")
            except Exception as exc:  # pragma: no cover - surfaced via assertion
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(name,)) for name in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        persisted = {entry["username"] for entry in json.loads((tmp_path / "users.json").read_text())}
        assert persisted == set(names)

    def test_concurrent_duplicate_registration_has_one_winner(self, store):
        results = []
        lock = threading.Lock()

        def worker():
            try:
                store.register("alice@example.com", "correct horse")
                outcome = "ok"
            except UserExistsError:
                outcome = "exists"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["exists", "exists", "exists", "ok"]
        assert store.count() == 1


def test_read_write_lock_allows_concurrent_readers():
    rw = ReadWriteLock()
    inside = threading.Barrier(2, timeout=5)
    broken = []

    def reader():
        with rw.read():
            try:
                inside.wait()
            except threading.BrokenBarrierError:
                broken.append(True)

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert broken == []
