import pytest

from conftest import as_generation, real_estate_schema
from vibe_crm.errors import (
    AuthFailure,
    GenerationFailure,
    InvalidIntent,
    LockConflict,
    NotFoundError,
    ProvisioningFailure,
    QuotaExceeded,
    ValidationFailure,
)
from vibe_crm.models import Identity
from vibe_crm.service import SchemaService, error_response

OWNER = Identity(id="u1", email="owner@example.com")
OTHER = Identity(id="u2")
PROMPT = "Create a CRM for real estate agents with properties, agents, and showings"


@pytest.fixture
def service(build_pipeline):
    pipeline, _ = build_pipeline(as_generation(real_estate_schema()), as_generation(real_estate_schema()))
    return SchemaService(pipeline)


@pytest.mark.parametrize(
    "exc, status",
    [
        (AuthFailure(), 401),
        (NotFoundError("Project 'x' not found"), 404),
        (InvalidIntent(), 400),
        (ValidationFailure(["a"]), 422),
        (LockConflict("u2", "2026-03-14T12:05:00+00:00"), 409),
        (QuotaExceeded(10, 10), 429),
        (GenerationFailure("model down"), 502),
        (ProvisioningFailure("boom", table="deals"), 500),
    ],
)
def test_error_response_statuses(exc, status):
    code, body = error_response(exc)
    assert code == status
    assert body["error"] == exc.kind
    assert body["message"]


def test_unexpected_errors_are_masked():
    code, body = error_response(KeyError("secret detail"))
    assert code == 500
    assert body == {"error": "internal", "message": "Internal error"}


def test_generate_returns_wire_shape(service):
    body = service.generate_schema(OWNER, PROMPT, "p1")
    assert body["version"] == "1.0.0"
    assert body["provision"]["tables_created"] == ["agents", "properties", "showings"]
    assert body["provision"]["namespace"] == "crm_p1"


def test_missing_identity(service):
    with pytest.raises(AuthFailure):
        service.generate_schema(None, PROMPT, "p1")
    with pytest.raises(AuthFailure):
        service.lock_status(Identity(id=""), "p1")


def test_other_users_project_looks_missing(service):
    for call in (
        lambda: service.lock_status(OTHER, "p1"),
        lambda: service.get_version_history(OTHER, "p1"),
        lambda: service.get_decision_traces(OTHER, "p1"),
        lambda: service.acquire_lock(OTHER, "p1"),
    ):
        with pytest.raises(NotFoundError):
            call()


def test_lock_endpoints(service):
    body = service.acquire_lock(OWNER, "p1", 3)
    assert body["lock_acquired"] is True
    assert body["lock_extended"] is False
    assert body["lock_id"]

    assert service.acquire_lock(OWNER, "p1")["lock_extended"] is True
    assert service.lock_status(OWNER, "p1")["is_own_lock"] is True
    assert service.release_lock(OWNER, "p1") == {"released": True}
    assert service.release_lock(OWNER, "p1") == {"released": False}


@pytest.mark.parametrize("minutes", [0, 11])
def test_lock_duration_is_validated(service, minutes):
    with pytest.raises(ValidationFailure):
        service.acquire_lock(OWNER, "p1", minutes)


def test_lock_conflict_body(service):
    service.pipeline.locks.acquire("p1", "u2", 5)
    with pytest.raises(LockConflict) as excinfo:
        service.acquire_lock(OWNER, "p1")
    status, body = error_response(excinfo.value)
    assert status == 409
    assert body["lock_acquired"] is False
    assert body["locked_by"] == "u2"


def test_history_traces_and_rollback(service):
    service.generate_schema(OWNER, PROMPT, "p1")
    service.generate_schema(OWNER, PROMPT, "p1")

    history = service.get_version_history(OWNER, "p1")
    assert history["active_version"] == "2.0.0"
    assert [v["schema_version"] for v in history["versions"]] == ["2.0.0", "1.0.0"]

    rolled = service.rollback(OWNER, "p1", "1.0.0", "prefer the first layout")
    assert rolled["success"] is True
    assert rolled["new_version"] == "1.0.1"
    assert rolled["rolled_back_to"] == "1.0.0"

    traces = service.get_decision_traces(OWNER, "p1")
    assert traces["active_version"] == "1.0.1"
    assert len(traces["traces"]) == 3
    assert traces["traces"][0]["id"] == rolled["trace_id"]


def test_plan_renders_active_version(service):
    with pytest.raises(NotFoundError):
        service.plan(OWNER, "p1")
    service.generate_schema(OWNER, PROMPT, "p1")

    sql = service.plan(OWNER, "p1")
    assert sql.startswith("-- namespace: crm_p1")
    assert 'CREATE TABLE IF NOT EXISTS "crm_p1"."showings"' in sql
    assert service.plan(OWNER, "p1", "1.0.0") == sql


def test_projects(service):
    created = service.create_project(OWNER, "Gym members", "Memberships and classes")
    names = [p["name"] for p in service.list_projects(OWNER)]
    assert created["name"] in names
    assert "Real estate" in names
    assert service.list_projects(OTHER) == []

    with pytest.raises(ValidationFailure):
        service.create_project(OWNER, "")


def test_deprovision_runs_under_lock(service, tenant_db):
    result = service.deprovision(OWNER, "p1")
    assert result["namespace"] == "crm_p1"
    assert tenant_db.executed[-1] == 'DROP SCHEMA IF EXISTS "crm_p1" CASCADE'
    assert service.lock_status(OWNER, "p1") == {"is_locked": False}


def test_generate_inside_acquired_lock(service):
    lock = service.acquire_lock(OWNER, "p1", 5)
    with pytest.raises(LockConflict):
        service.generate_schema(OWNER, PROMPT, "p1")

    body = service.generate_schema(OWNER, PROMPT, "p1", lock_id=lock["lock_id"])
    assert body["version"] == "1.0.0"
    assert service.lock_status(OWNER, "p1")["is_own_lock"] is True


def test_compare_versions(build_pipeline):
    smaller = real_estate_schema()
    del smaller["tables"][2]
    smaller["tables"][0]["columns"].append({"name": "phone", "type": "TEXT", "nullable": True})
    pipeline, _ = build_pipeline(as_generation(real_estate_schema()), as_generation(smaller))
    service = SchemaService(pipeline)
    service.generate_schema(OWNER, PROMPT, "p1")
    service.generate_schema(OWNER, PROMPT, "p1")

    body = service.compare_versions(OWNER, "p1", "1.0.0", "2.0.0")
    assert body["is_destructive"] is True
    assert body["changes"]["drop_tables"] == ["showings"]
    assert body["changes"]["add_columns"] == {"agents": ["phone"]}
    assert body["changes"]["create_tables"] == []

    reverse = service.compare_versions(OWNER, "p1", "2.0.0", "1.0.0")
    assert reverse["changes"]["create_tables"] == ["showings"]
    assert reverse["changes"]["drop_columns"] == {"agents": ["phone"]}

    with pytest.raises(NotFoundError):
        service.compare_versions(OWNER, "p1", "1.0.0", "9.9.9")
    with pytest.raises(NotFoundError):
        service.compare_versions(OTHER, "p1", "1.0.0", "2.0.0")
