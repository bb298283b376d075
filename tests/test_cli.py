import json

import pytest

from conftest import as_generation, real_estate_schema
from vibe_crm.cli import build_parser, main
from vibe_crm.service import SchemaService

PROMPT = "Create a CRM for real estate agents with properties, agents, and showings"


@pytest.fixture
def service(build_pipeline):
    pipeline, _ = build_pipeline(as_generation(real_estate_schema()))
    return SchemaService(pipeline)


def test_parser_defaults():
    args = build_parser().parse_args(["--user", "u1", "lock", "p1"])
    assert args.command == "lock"
    assert args.minutes == 5


def test_generate_prints_json(service, capsys):
    assert main(["--user", "u1", "generate", PROMPT, "--project", "p1"], service=service) == 0
    body = json.loads(capsys.readouterr().out)
    assert body["version"] == "1.0.0"
    assert body["intent"] == "CREATE"


def test_missing_user_is_an_error(service, capsys):
    assert main(["history", "p1"], service=service) == 1
    assert capsys.readouterr().out.startswith("Error 401 (unauthenticated)")


def test_validation_details_in_verbose_mode(service, capsys):
    assert main(["-v", "--user", "u1", "generate", "crm"], service=service) == 1
    out = capsys.readouterr().out
    assert out.startswith("Error 422 (validation_failure): Invalid request")
    assert "Details:" in out
    assert "prompt:" in out


def test_plan_prints_raw_sql(service, capsys):
    main(["--user", "u1", "generate", PROMPT, "--project", "p1"], service=service)
    capsys.readouterr()

    assert main(["--user", "u1", "plan", "p1"], service=service) == 0
    out = capsys.readouterr().out
    assert out.startswith("-- namespace: crm_p1\nBEGIN;")


def test_lock_conflict_exit_code(service, capsys):
    service.pipeline.locks.acquire("p1", "u2", 5)
    assert main(["--user", "u1", "lock", "p1"], service=service) == 1
    assert "Error 409 (lock_conflict)" in capsys.readouterr().out


def test_show_prints_stored_version(service, capsys):
    main(["--user", "u1", "generate", PROMPT, "--project", "p1"], service=service)
    capsys.readouterr()

    assert main(["--user", "u1", "show", "p1", "1.0.0"], service=service) == 0
    body = json.loads(capsys.readouterr().out)
    assert body["schema_version"] == "1.0.0"
    assert body["is_active"] is True
    assert main(["--user", "u1", "show", "p1", "2.0.0"], service=service) == 1


def test_compare_prints_changes(service, capsys):
    main(["--user", "u1", "generate", PROMPT, "--project", "p1"], service=service)
    capsys.readouterr()

    assert main(["--user", "u1", "compare", "p1", "1.0.0", "1.0.0"], service=service) == 0
    body = json.loads(capsys.readouterr().out)
    assert body["is_destructive"] is False
    assert body["changes"]["create_tables"] == []
