import copy
import json
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC

import pytest

from vibe_crm.db.infra.core import init_db
from vibe_crm.db.projects import ProjectDAO
from vibe_crm.engine import SchemaPipeline
from vibe_crm.generator import SchemaGenerator
from vibe_crm.intent import IntentClassifier
from vibe_crm.llm_client import LLMClient
from vibe_crm.provisioning.provisioner import Provisioner


# -----------------------
# Schema builders
# -----------------------

def audit_columns():
    return [
        {"name": "id", "type": "UUID", "nullable": False, "primaryKey": True, "default": "gen_random_uuid()"},
        {
            "name": "user_id",
            "type": "UUID",
            "nullable": False,
            "references": {"table": "auth.users", "column": "id", "onDelete": "CASCADE"},
        },
        {"name": "created_at", "type": "TIMESTAMPTZ", "nullable": False, "default": "now()"},
        {"name": "updated_at", "type": "TIMESTAMPTZ", "nullable": False, "default": "now()"},
    ]


def make_table(name, *columns, hints=None, indexes=None):
    return {
        "name": name,
        "columns": audit_columns() + [dict(c) for c in columns],
        "indexes": list(indexes or []),
        "ui_hints": {
            "icon": "table",
            "label": name.replace("_", " ").title(),
            "description": f"{name} records",
            "columns": dict(hints or {}),
        },
    }


def fk(name, table, nullable=True, on_delete="SET NULL"):
    return {
        "name": name,
        "type": "UUID",
        "nullable": nullable,
        "references": {"table": table, "column": "id", "onDelete": on_delete},
    }


def make_schema(*tables, version="1.0.0"):
    return {"version": version, "tables": [copy.deepcopy(t) for t in tables], "relationships": []}


def real_estate_schema(version="1.0.0"):
    return make_schema(
        make_table(
            "agents",
            {"name": "full_name", "type": "TEXT", "nullable": False},
            {"name": "email", "type": "TEXT", "nullable": True, "unique": True},
            hints={"full_name": {"display_name": "Name", "sortable": True, "mobile_priority": 1}},
        ),
        make_table(
            "properties",
            {"name": "address", "type": "TEXT", "nullable": False},
            {"name": "price", "type": "NUMERIC", "nullable": True},
            {"name": "status", "type": "TEXT", "nullable": False, "default": "'available'"},
            fk("listing_agent_id", "agents"),
            hints={"status": {"display_name": "Status", "filterable": True, "type": "enum"}},
        ),
        make_table(
            "showings",
            fk("property_id", "properties", nullable=False, on_delete="CASCADE"),
            fk("agent_id", "agents"),
            {"name": "scheduled_for", "type": "TIMESTAMPTZ", "nullable": False},
        ),
        version=version,
    )


# -----------------------
# Control-plane DB
# -----------------------

@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "vibe_crm_test.db")
    init_db(path)
    return path


@pytest.fixture
def project(db_path):
    return ProjectDAO(db_path).create("u1", "Real estate", project_id="p1")


# -----------------------
# Clock
# -----------------------

class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 14, 12, 0, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock()


# -----------------------
# Tenant database fake
# -----------------------

class FakeCursor:
    def __init__(self, db):
        self.db = db
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        if self.db.fail_on and self.db.fail_on in sql:
            raise RuntimeError(f"relation conflict near {self.db.fail_on!r}")
        if "information_schema.columns" in sql:
            self._rows = list(self.db.live_rows)
            return
        self.db.pending.append(sql)
        self._rows = []

    def fetchall(self):
        return list(self._rows)


class FakeTenantDB:
    """
    Records statements per transaction. ``executed`` only holds statements
    from committed transactions.
    """

    def __init__(self):
        self.live_rows = []
        self.pending = []
        self.executed = []
        self.fail_on = None
        self.commits = 0
        self.rollbacks = 0

    def set_live(self, columns_by_table):
        udt = {
            "UUID": "uuid", "TEXT": "text", "NUMERIC": "numeric", "TIMESTAMPTZ": "timestamptz",
            "INTEGER": "int4", "BOOLEAN": "bool", "JSONB": "jsonb",
        }
        self.live_rows = [
            (table, col, udt.get(t, t.lower()))
            for table, cols in columns_by_table.items()
            for col, t in cols.items()
        ]

    def cursor(self):
        return FakeCursor(self)

    @contextmanager
    def connect(self):
        self.pending = []
        try:
            yield self
            self.executed.extend(self.pending)
            self.commits += 1
        except Exception:
            self.rollbacks += 1
            raise
        finally:
            self.pending = []


@pytest.fixture
def tenant_db():
    return FakeTenantDB()


# -----------------------
# LLM SDK fake
# -----------------------

class DummyResponses:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = []

    def create(self, model, input, instructions=None, text=None, temperature=None, max_output_tokens=None, timeout=None):
        self.calls.append({"model": model, "input": input, "instructions": instructions})
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return type("Resp", (), {"output_text": out, "usage": None})()


class DummySDK:
    def __init__(self, outputs):
        self.responses = DummyResponses(outputs)


def as_generation(schema, reasoning="Three core entities linked by foreign keys."):
    return json.dumps({"reasoning": reasoning, "schema": schema})


# -----------------------
# Pipeline wiring
# -----------------------

@pytest.fixture
def build_pipeline(db_path, project, tenant_db, clock):
    """
    Returns build(*model_outputs, **pipeline_kwargs) -> (pipeline, sdk).
    Intent is decided by the rule-based classifier; the generator consumes
    ``model_outputs`` in order.
    """
    def build(*outputs, **kwargs):
        sdk = DummySDK(outputs)
        llm = LLMClient(sdk, max_retries=1, sleep=lambda s: None)
        pipeline = SchemaPipeline(
            db_path=db_path,
            classifier=IntentClassifier(None),
            generator=SchemaGenerator(llm, model="test-model"),
            provisioner=Provisioner(tenant_db.connect),
            clock=clock,
            **kwargs,
        )
        return pipeline, sdk

    return build
