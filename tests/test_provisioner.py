import copy

import pytest

from conftest import make_table, real_estate_schema
from vibe_crm.errors import ProvisioningFailure, ValidationFailure
from vibe_crm.provisioning.provisioner import Provisioner


@pytest.fixture
def provisioner(tenant_db):
    return Provisioner(tenant_db.connect)


def live_from(schema):
    return {t["name"]: {c["name"]: c["type"] for c in t["columns"]} for t in schema["tables"]}


def test_provision_creates_tables_in_dependency_order(provisioner, tenant_db):
    result = provisioner.provision("p1", real_estate_schema())

    assert result.namespace == "crm_p1"
    assert result.tables_created == ["agents", "properties", "showings"]
    assert result.statements == len(tenant_db.executed)
    assert tenant_db.commits == 1

    creates = [s for s in tenant_db.executed if s.startswith("CREATE TABLE")]
    assert [s.split("\n")[0] for s in creates] == [
        'CREATE TABLE IF NOT EXISTS "crm_p1"."agents" (',
        'CREATE TABLE IF NOT EXISTS "crm_p1"."properties" (',
        'CREATE TABLE IF NOT EXISTS "crm_p1"."showings" (',
    ]
    assert sum("ENABLE ROW LEVEL SECURITY" in s for s in tenant_db.executed) == 3
    assert sum(s.startswith("CREATE POLICY") for s in tenant_db.executed) == 12


def test_failure_rolls_back_and_names_the_table(provisioner, tenant_db):
    tenant_db.fail_on = '"crm_p1"."showings" ('

    with pytest.raises(ProvisioningFailure) as excinfo:
        provisioner.provision("p1", real_estate_schema())

    assert excinfo.value.table == "showings"
    assert "showings" in excinfo.value.message
    assert tenant_db.executed == []
    assert tenant_db.rollbacks == 1


def test_invalid_schema_never_reaches_the_database(provisioner, tenant_db):
    doc = real_estate_schema()
    doc["tables"][0]["name"] = "user"
    with pytest.raises(ValidationFailure):
        provisioner.provision("p1", doc)
    assert tenant_db.commits == 0


def test_sync_against_empty_namespace_creates_everything(provisioner, tenant_db):
    result = provisioner.sync("p1", real_estate_schema())
    assert result.tables_created == ["agents", "properties", "showings"]
    assert result.tables_dropped == []


def test_sync_applies_additive_changes_only(provisioner, tenant_db):
    current = real_estate_schema()
    tenant_db.set_live(live_from(current))

    desired = copy.deepcopy(current)
    desired["tables"][0]["columns"].append({"name": "phone", "type": "TEXT", "nullable": True})
    desired["tables"].append(make_table("notes", {"name": "body", "type": "TEXT", "nullable": True}))

    result = provisioner.sync("p1", desired)

    assert result.tables_created == ["notes"]
    assert result.tables_altered == ["agents"]
    assert 'ALTER TABLE "crm_p1"."agents" ADD COLUMN IF NOT EXISTS "phone" text' in tenant_db.executed
    assert not any(s.startswith('CREATE TABLE IF NOT EXISTS "crm_p1"."agents"') for s in tenant_db.executed)


def test_sync_refuses_destructive_change_without_confirmation(provisioner, tenant_db):
    current = real_estate_schema()
    tenant_db.set_live(live_from(current))
    desired = copy.deepcopy(current)
    del desired["tables"][2]

    with pytest.raises(ValidationFailure) as excinfo:
        provisioner.sync("p1", desired)
    assert excinfo.value.errors == ["Drop table 'showings'"]
    assert tenant_db.executed == []

    result = provisioner.sync("p1", desired, allow_destructive=True)
    assert result.tables_dropped == ["showings"]
    assert 'DROP TABLE IF EXISTS "crm_p1"."showings" CASCADE' in tenant_db.executed


def test_not_null_column_without_default_cannot_be_added(provisioner, tenant_db):
    current = real_estate_schema()
    tenant_db.set_live(live_from(current))
    desired = copy.deepcopy(current)
    desired["tables"][0]["columns"].append({"name": "license_no", "type": "TEXT", "nullable": False})

    with pytest.raises(ProvisioningFailure) as excinfo:
        provisioner.sync("p1", desired)
    assert excinfo.value.table == "agents"
    assert tenant_db.executed == []


def test_plan_is_a_dry_run(provisioner, tenant_db):
    plan = provisioner.plan("p-1", real_estate_schema())
    assert plan.namespace == "crm_p_1"
    assert "BEGIN;" in plan.to_sql()
    assert tenant_db.commits == 0


def test_deprovision(provisioner, tenant_db):
    provisioner.deprovision("p1", ["showings"])
    assert tenant_db.executed == ['DROP TABLE IF EXISTS "crm_p1"."showings" CASCADE']

    result = provisioner.deprovision("p1")
    assert tenant_db.executed[-1] == 'DROP SCHEMA IF EXISTS "crm_p1" CASCADE'
    assert result.tables_dropped == []
