import pytest

from vibe_crm.db.locks import SchemaLockManager, lock_manager
from vibe_crm.errors import LockConflict


@pytest.fixture
def locks(db_path, project, clock):
    return SchemaLockManager(db_path, clock=clock)


def test_second_user_is_refused_while_lock_is_held(locks):
    first = locks.acquire("p1", "u1", 5)
    assert first.lock_acquired is True
    assert first.lock_extended is False
    assert first.expires_at.startswith("2026-03-14T12:05:00")

    second = locks.acquire("p1", "u2", 5)
    assert second.lock_acquired is False
    assert second.locked_by == "u1"
    assert second.expires_at == first.expires_at
    assert "lock_id" not in second.to_dict()


def test_owner_reacquire_extends(locks, clock):
    first = locks.acquire("p1", "u1", 5)
    clock.advance(minutes=2)
    again = locks.acquire("p1", "u1", 5)

    assert again.lock_acquired is True
    assert again.lock_extended is True
    assert again.lock_id == first.lock_id
    assert again.expires_at.startswith("2026-03-14T12:07:00")


def test_expired_lock_is_taken_over(locks, clock):
    locks.acquire("p1", "u1", 5)
    clock.advance(minutes=6)

    result = locks.acquire("p1", "u2", 5)
    assert result.lock_acquired is True
    assert result.lock_extended is False
    assert result.locked_by == "u2"


@pytest.mark.parametrize("ttl", [0, 11, "5", True])
def test_ttl_bounds(locks, ttl):
    with pytest.raises(ValueError):
        locks.acquire("p1", "u1", ttl)


def test_release_only_by_owner(locks):
    locks.acquire("p1", "u1", 5)
    assert locks.release("p1", "u2") is False
    assert locks.status("p1")["is_locked"] is True

    assert locks.release("p1", "u1") is True
    assert locks.release("p1", "u1") is False
    assert locks.status("p1") == {"is_locked": False}


def test_status_reports_ownership(locks, clock):
    locks.acquire("p1", "u1", 5)

    mine = locks.status("p1", "u1")
    assert mine["is_locked"] is True
    assert mine["is_own_lock"] is True
    assert mine["locked_by"] == "u1"

    theirs = locks.status("p1", "u2")
    assert theirs["is_own_lock"] is False

    clock.advance(minutes=5)
    assert locks.status("p1", "u1") == {"is_locked": False}


def test_hold_releases_fresh_lock(locks):
    with locks.hold("p1", "u1") as lock:
        assert lock.lock_acquired is True
        assert locks.status("p1")["is_locked"] is True
    assert locks.status("p1")["is_locked"] is False


def test_hold_releases_on_error(locks):
    with pytest.raises(RuntimeError):
        with locks.hold("p1", "u1"):
            raise RuntimeError("boom")
    assert locks.status("p1")["is_locked"] is False


def test_hold_reuses_a_lock_only_with_its_id(locks):
    taken = locks.acquire("p1", "u1", 5)
    with locks.hold("p1", "u1", lock_id=taken.lock_id) as lock:
        assert lock.lock_extended is True
        assert lock.lock_id == taken.lock_id
    assert locks.status("p1", "u1")["is_own_lock"] is True


def test_hold_refuses_same_owner_without_lock_id(locks):
    locks.acquire("p1", "u1", 5)
    with pytest.raises(LockConflict) as excinfo:
        with locks.hold("p1", "u1"):
            pass
    assert excinfo.value.locked_by == "u1"
    assert "another request" in excinfo.value.message
    assert locks.status("p1")["is_locked"] is True


def test_nested_hold_on_one_project_conflicts(locks):
    with locks.hold("p1", "u1"):
        with pytest.raises(LockConflict):
            with locks.hold("p1", "u1"):
                pass
        assert locks.status("p1")["is_locked"] is True
    assert locks.status("p1")["is_locked"] is False


def test_hold_does_not_release_a_lock_taken_over_after_expiry(locks, clock):
    with locks.hold("p1", "u1", 1):
        clock.advance(minutes=2)
        assert locks.acquire("p1", "u2", 5).lock_acquired is True
    assert locks.status("p1")["locked_by"] == "u2"


def test_hold_raises_conflict_for_other_owner(locks):
    locks.acquire("p1", "u1", 5)
    with pytest.raises(LockConflict) as excinfo:
        with locks.hold("p1", "u2"):
            pass
    body = excinfo.value.to_dict()
    assert body["lock_acquired"] is False
    assert body["locked_by"] == "u1"


def test_sweep_expired(locks, clock):
    locks.acquire("p1", "u1", 1)
    assert locks.sweep_expired() == 0
    clock.advance(minutes=1)
    assert locks.sweep_expired() == 1


def test_transaction_scoped_manager(db_path, project, clock):
    with lock_manager(db_path, clock=clock) as mgr:
        assert mgr.acquire("p1", "u1", 3).lock_acquired is True
    assert SchemaLockManager(db_path, clock=clock).status("p1")["locked_by"] == "u1"
