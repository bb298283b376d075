from conftest import FakeTenantDB
from vibe_crm.provisioning.schema_diff import (
    detect_column_renames,
    detect_table_renames,
    diff_schemas,
    get_live_schema,
)


def test_get_live_schema_maps_udt_names():
    db = FakeTenantDB()
    db.live_rows = [("deals", "id", "uuid"), ("deals", "tags", "_text"), ("deals", "amount", "numeric")]
    with db.cursor() as cur:
        live = get_live_schema(cur, "crm_p1")
    assert live == {"deals": {"id": "UUID", "tags": "TEXT[]", "amount": "NUMERIC"}}


def test_identical_schemas_produce_empty_diff():
    cols = {"deals": {"id": "UUID", "name": "TEXT"}}
    diff = diff_schemas(cols, cols)
    assert diff.is_empty
    assert not diff.is_destructive


def test_additive_changes_are_not_destructive():
    live = {"deals": {"id": "UUID"}}
    desired = {"deals": {"id": "UUID", "stage": "TEXT"}, "notes": {"id": "UUID"}}
    diff = diff_schemas(live, desired)

    assert diff.create_tables == ["notes"]
    assert diff.add_columns == {"deals": ["stage"]}
    assert not diff.is_destructive
    assert diff.destructive_changes() == []


def test_destructive_changes_are_listed():
    live = {"deals": {"id": "UUID", "stage": "TEXT", "amount": "TEXT"}, "legacy": {"id": "UUID"}}
    desired = {"deals": {"id": "UUID", "amount": "NUMERIC"}}
    diff = diff_schemas(live, desired)

    assert diff.is_destructive
    assert diff.destructive_changes() == [
        "Drop table 'legacy'",
        "Drop column 'deals.stage'",
        "Change type of 'deals.amount' from TEXT to NUMERIC",
    ]
    assert diff.to_dict()["type_changes"] == {"deals": [{"column": "amount", "from": "TEXT", "to": "NUMERIC"}]}


def test_table_rename_candidates():
    live = {"clients": {"id": "UUID", "user_id": "UUID", "name": "TEXT", "email": "TEXT"}}
    desired = {"customers": {"id": "UUID", "user_id": "UUID", "name": "TEXT", "email": "TEXT", "phone": "TEXT"}}
    candidates = detect_table_renames(live, desired)
    assert candidates[0]["from"] == "clients"
    assert candidates[0]["to"] == "customers"
    assert candidates[0]["confidence"] == 0.8


def test_column_rename_candidates_need_matching_type():
    renames = detect_column_renames({"phone": "TEXT"}, {"phone_number": "TEXT"})
    assert renames[0]["from"] == "phone"
    assert renames[0]["to"] == "phone_number"

    assert detect_column_renames({"phone": "TEXT"}, {"phone_number": "INTEGER"}) == []
