import sqlite3

import pytest

from conftest import real_estate_schema
from vibe_crm.db.versions import VersionStore, version_store
from vibe_crm.errors import NotFoundError
from vibe_crm.models import CREATE, MODIFY


@pytest.fixture
def store(db_path, project):
    return VersionStore(db_path)


def test_first_version_is_initial(store):
    assert store.next_version("p1", CREATE) == "1.0.0"
    assert store.next_version("p1", MODIFY) == "1.0.0"


def test_modify_bumps_minor_and_create_bumps_major(store):
    store.add("p1", "u1", "1.0.0", real_estate_schema())
    store.add("p1", "u1", "1.1.0", real_estate_schema("1.1.0"))
    assert store.next_version("p1", MODIFY) == "1.2.0"
    assert store.next_version("p1", CREATE) == "2.0.0"


def test_rollback_version_skips_used_numbers(store):
    store.add("p1", "u1", "1.0.0", real_estate_schema())
    store.add("p1", "u1", "1.2.0", real_estate_schema("1.2.0"))
    assert store.rollback_version("p1", "1.0.0") == "1.0.1"

    store.add("p1", "u1", "1.0.1", real_estate_schema())
    assert store.rollback_version("p1", "1.0.0") == "1.0.2"


def test_add_keeps_exactly_one_active(store):
    store.add("p1", "u1", "1.0.0", real_estate_schema())
    store.add("p1", "u1", "1.1.0", real_estate_schema("1.1.0"))

    history = store.history("p1")
    assert [v["schema_version"] for v in history] == ["1.1.0", "1.0.0"]
    assert [v["is_active"] for v in history] == [True, False]
    assert "schema_json" not in history[0]
    assert store.active("p1")["schema_version"] == "1.1.0"


def test_activate_switches_active_version(store):
    store.add("p1", "u1", "1.0.0", real_estate_schema())
    store.add("p1", "u1", "1.1.0", real_estate_schema("1.1.0"))

    store.activate("p1", "1.0.0")
    assert store.active("p1")["schema_version"] == "1.0.0"
    assert sum(v["is_active"] for v in store.history("p1")) == 1

    with pytest.raises(NotFoundError):
        store.activate("p1", "9.9.9")


def test_schema_round_trips_unchanged(store):
    schema = real_estate_schema()
    store.add("p1", "u1", "1.0.0", schema)
    assert store.require("p1", "1.0.0")["schema_json"] == schema


def test_require_missing_version(store):
    assert store.get("p1", "1.0.0") is None
    with pytest.raises(NotFoundError, match="Version 1.0.0 not found"):
        store.require("p1", "1.0.0")


def test_duplicate_version_number_is_rejected(store):
    store.add("p1", "u1", "1.0.0", real_estate_schema())
    with pytest.raises(sqlite3.IntegrityError):
        store.add("p1", "u1", "1.0.0", real_estate_schema())
    assert store.active("p1")["schema_version"] == "1.0.0"


def test_second_active_row_is_blocked_by_index(db_path, project):
    with version_store(db_path) as s:
        s.add("p1", "u1", "1.0.0", real_estate_schema())
        s.add("p1", "u1", "1.1.0", real_estate_schema(), activate=False)

    conn = sqlite3.connect(db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE schema_versions SET is_active = 1")
    finally:
        conn.close()
