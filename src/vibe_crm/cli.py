#!/usr/bin/env python3
# vibe_crm/cli.py
"""
vibe-crm command line.

Identity is taken from --user (the identity provider sits in front of the
real application). Output is JSON on stdout; failures print a one-line
summary and exit non-zero.

Examples:
  vibe-crm init-db
  vibe-crm --user u1 create-project "Real estate"
  vibe-crm --user u1 generate "Create a CRM for real estate agents with properties, agents, and showings" --project <id>
  vibe-crm --user u1 lock <id> --minutes 5
  vibe-crm --user u1 rollback <id> 1.0.0 --reason "bad migration"
  vibe-crm --user u1 plan <id> --version 1.0.0
"""
import argparse
import logging
import sys
from typing import Optional

from vibe_crm.cli_utils import print_json, print_user_message
from vibe_crm.config import (
    DB_FILE_PATH,
    LLM_MAX_RETRIES,
    LLM_MODEL,
    LLM_TIMEOUT,
    LOCK_TTL_MINUTES,
    OPENAI_API_KEY,
    configure_logging,
)
from vibe_crm.db.infra.core import init_db
from vibe_crm.engine import SchemaPipeline
from vibe_crm.errors import AuthFailure, ValidationFailure
from vibe_crm.generator import SchemaGenerator
from vibe_crm.intent import IntentClassifier
from vibe_crm.llm_client import LLMClient, build_openai_client
from vibe_crm.models import Identity
from vibe_crm.provisioning.provisioner import Provisioner
from vibe_crm.service import SchemaService, error_response

logger = logging.getLogger(__name__)


def build_service(db_path: str, llm_client: Optional[LLMClient] = None, provisioner: Optional[Provisioner] = None) -> SchemaService:
    if llm_client is None and OPENAI_API_KEY:
        llm_client = build_openai_client(
            OPENAI_API_KEY,
            timeout=LLM_TIMEOUT,
            max_retries=LLM_MAX_RETRIES,
        )
    pipeline = SchemaPipeline(
        db_path=db_path,
        classifier=IntentClassifier(llm_client, model=LLM_MODEL),
        generator=SchemaGenerator(llm_client, model=LLM_MODEL),
        provisioner=provisioner or Provisioner(),
    )
    return SchemaService(pipeline)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vibe-crm",
        description="Generate, provision and version CRM schemas from natural language.",
    )
    parser.add_argument("--db", default=str(DB_FILE_PATH), help=f"Control-plane SQLite file (default: {DB_FILE_PATH})")
    parser.add_argument("--user", help="Caller identity (user id)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print error details")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or migrate the control-plane database")

    p = sub.add_parser("create-project", help="Register a new project")
    p.add_argument("name")
    p.add_argument("--description")

    sub.add_parser("projects", help="List your projects")

    p = sub.add_parser("generate", help="Generate (and provision) a schema from a prompt")
    p.add_argument("prompt")
    p.add_argument("--project", help="Project id; omit for a preview that is not provisioned")
    p.add_argument("--confirm-destructive", action="store_true", help="Allow dropping tables/columns")
    p.add_argument("--lock-id", help="Run inside a lock taken earlier with `lock`")

    p = sub.add_parser("lock", help="Acquire or extend the schema lock")
    p.add_argument("project")
    p.add_argument("--minutes", type=int, default=LOCK_TTL_MINUTES, help=f"Lock duration 1-10 (default: {LOCK_TTL_MINUTES})")

    p = sub.add_parser("unlock", help="Release your schema lock")
    p.add_argument("project")

    p = sub.add_parser("lock-status", help="Show the schema lock holder")
    p.add_argument("project")

    p = sub.add_parser("rollback", help="Restore a stored version as a new version")
    p.add_argument("project")
    p.add_argument("version")
    p.add_argument("--reason")
    p.add_argument("--confirm-destructive", action="store_true", help="Allow dropping tables/columns")
    p.add_argument("--lock-id", help="Run inside a lock taken earlier with `lock`")

    p = sub.add_parser("history", help="List stored versions")
    p.add_argument("project")

    p = sub.add_parser("show", help="Print one stored version")
    p.add_argument("project")
    p.add_argument("version")

    p = sub.add_parser("compare", help="Show table/column changes between two stored versions")
    p.add_argument("project")
    p.add_argument("from_version")
    p.add_argument("to_version")

    p = sub.add_parser("traces", help="List decision traces, newest first")
    p.add_argument("project")

    p = sub.add_parser("plan", help="Print the provisioning SQL for a stored version (dry run)")
    p.add_argument("project")
    p.add_argument("--version", help="Stored version (default: active)")

    return parser


def run(args, service: SchemaService):
    if args.command == "init-db":
        init_db(args.db)
        return {"initialized": args.db}

    if not args.user:
        raise AuthFailure("--user is required for this command")
    identity = Identity(id=args.user)

    if args.command == "create-project":
        return service.create_project(identity, args.name, args.description)
    if args.command == "projects":
        return service.list_projects(identity)
    if args.command == "generate":
        return service.generate_schema(
            identity,
            args.prompt,
            args.project,
            confirm_destructive=args.confirm_destructive,
            lock_id=args.lock_id,
        )
    if args.command == "lock":
        return service.acquire_lock(identity, args.project, args.minutes)
    if args.command == "unlock":
        return service.release_lock(identity, args.project)
    if args.command == "lock-status":
        return service.lock_status(identity, args.project)
    if args.command == "rollback":
        return service.rollback(
            identity,
            args.project,
            args.version,
            args.reason,
            confirm_destructive=args.confirm_destructive,
            lock_id=args.lock_id,
        )
    if args.command == "history":
        return service.get_version_history(identity, args.project)
    if args.command == "show":
        return service.get_version(identity, args.project, args.version)
    if args.command == "compare":
        return service.compare_versions(identity, args.project, args.from_version, args.to_version)
    if args.command == "traces":
        return service.get_decision_traces(identity, args.project)
    if args.command == "plan":
        return service.plan(identity, args.project, args.version)
    raise ValueError(f"Unknown command {args.command!r}")


def main(argv=None, service: Optional[SchemaService] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        if service is None:
            if args.command != "init-db":
                init_db(args.db)
            service = build_service(args.db)
        result = run(args, service)
    except Exception as e:
        status, body = error_response(e)
        details = None
        if isinstance(e, ValidationFailure):
            details = "\n".join(e.errors)
        print_user_message(
            f"Error {status} ({body['error']}): {body['message']}",
            details=details,
            verbose=args.verbose,
        )
        return 1

    if isinstance(result, str):
        print(result, end="")
    else:
        print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
