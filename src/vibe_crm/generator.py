# generator.py
"""
Schema Generator: prompt (+ optional existing schema) -> {schema, reasoning}.

Owns prompt construction and response parsing only. The returned schema is
untrusted data; callers must run it through vibe_crm.validator before
acting on it. No database or filesystem writes happen here.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from vibe_crm.config import LLM_MODEL
from vibe_crm.errors import GenerationFailure
from vibe_crm.llm_client import LLMClient, LLMError
from vibe_crm.structured_schemas import CRMSchema, derive_relationships, schema_json_text
from vibe_crm.utils import safe_format

logger = logging.getLogger(__name__)

GENERATOR_INSTRUCTIONS = """You are an expert database architect specializing in CRM systems built on PostgreSQL.

Generate a complete CRM database schema from the user's description and answer with ONE JSON object:
{"reasoning": "<short rationale for the design>", "schema": <CRMSchema>}

RULES:
1. Table and column names: snake_case matching ^[a-z][a-z0-9_]*$, at most 63 characters.
2. EVERY table MUST include:
   - id UUID primaryKey, default "gen_random_uuid()"
   - user_id UUID NOT NULL referencing auth.users(id) onDelete CASCADE
   - created_at TIMESTAMPTZ NOT NULL default "now()"
   - updated_at TIMESTAMPTZ NOT NULL default "now()"
3. At most 15 tables and 50 columns per table.
4. Never use these names: user, order, table, column, index, constraint, grant, select, insert,
   update, delete, where, from, join, group, having, limit, offset, union, intersect, except,
   alter, drop, create, truncate, replace.
5. Foreign keys must reference tables in this schema (or auth.users for user_id). No circular dependencies.
6. Column types: UUID, TEXT, VARCHAR, INTEGER, BIGINT, BOOLEAN, TIMESTAMP, TIMESTAMPTZ, DATE, NUMERIC,
   JSONB, TEXT[], INTEGER[], UUID[]. onDelete: CASCADE, RESTRICT, SET NULL, NO ACTION.
7. Defaults are limited to gen_random_uuid(), now(), CURRENT_TIMESTAMP, CURRENT_DATE, true, false,
   numbers, and single-quoted literals such as 'open' or '{}'::jsonb.
8. Every table needs ui_hints with icon, label, description and per-column display hints.

CRMSchema JSON schema:
{crm_schema}

Output only the JSON object. No markdown."""

CREATE_TEMPLATE = 'Generate a CRM database schema for: "{prompt}"'

MODIFY_TEMPLATE = """Modify this existing schema based on the user's request: "{prompt}"

Existing schema:
{existing}

Keep every table and column the request does not touch exactly as it is.
Output the COMPLETE modified schema (not just the changes)."""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class GeneratedSchema:
    schema: Dict[str, Any]
    reasoning: str


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip())


def build_prompt(prompt: str, existing_schema: Optional[Dict[str, Any]] = None) -> str:
    if existing_schema:
        return safe_format(
            MODIFY_TEMPLATE,
            {"prompt": prompt, "existing": json.dumps(existing_schema, indent=2)},
        )
    return safe_format(CREATE_TEMPLATE, {"prompt": prompt})


def build_instructions() -> str:
    schema_text = schema_json_text("crm_schema")
    # Plain replace: the JSON schema text is full of braces
    return GENERATOR_INSTRUCTIONS.replace("{crm_schema}", schema_text)


def parse_generation(text: str, prompt: str) -> GeneratedSchema:
    """
    Accept either {"reasoning", "schema"} or a bare schema object.
    Raises GenerationFailure on anything that is not a JSON object.
    """
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GenerationFailure(f"Model response is not valid JSON: {e.msg}") from e

    if not isinstance(payload, dict):
        raise GenerationFailure("Model response is not a JSON object")

    if isinstance(payload.get("schema"), dict):
        schema = payload["schema"]
        reasoning = payload.get("reasoning")
    else:
        schema = payload
        reasoning = None

    if not isinstance(reasoning, str) or not reasoning.strip():
        tables = schema.get("tables")
        count = len(tables) if isinstance(tables, list) else 0
        reasoning = f'Generated {count} table(s) based on prompt: "{prompt}".'

    return GeneratedSchema(schema=schema, reasoning=reasoning.strip())


def fill_relationships(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Derive relationships from foreign keys when the model left them out.
    Leaves the document untouched if it does not parse.
    """
    if schema.get("relationships"):
        return schema
    try:
        parsed = CRMSchema.model_validate(schema)
    except ValueError:
        return schema
    filled = dict(schema)
    filled["relationships"] = [r.model_dump() for r in derive_relationships(parsed)]
    return filled


class SchemaGenerator:
    def __init__(self, llm_client: Optional[LLMClient], *, model: str = LLM_MODEL):
        self._llm = llm_client
        self._model = model

    def generate(self, prompt: str, existing_schema: Optional[Dict[str, Any]] = None) -> GeneratedSchema:
        if self._llm is None:
            raise GenerationFailure("No language model is configured (set OPENAI_API_KEY)")
        logger.info(
            "Generating schema (%s)",
            "modify existing" if existing_schema else "from scratch",
        )
        try:
            response = self._llm.create_text_response(
                self._model,
                build_prompt(prompt, existing_schema),
                instructions=build_instructions(),
            )
        except LLMError as e:
            logger.exception("Schema generation call failed")
            raise GenerationFailure("The schema model is unavailable. Please retry.") from e

        result = parse_generation(response.text, prompt)
        result.schema = fill_relationships(result.schema)
        return result
