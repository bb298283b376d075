import json

import pytest

from conftest import DummySDK, as_generation, real_estate_schema
from vibe_crm.errors import GenerationFailure
from vibe_crm.generator import SchemaGenerator, build_instructions, build_prompt, parse_generation
from vibe_crm.llm_client import LLMClient


def generator_with(*outputs):
    sdk = DummySDK(outputs)
    return SchemaGenerator(LLMClient(sdk, max_retries=1, sleep=lambda s: None), model="m"), sdk


def test_generate_returns_schema_reasoning_and_relationships():
    generator, sdk = generator_with(as_generation(real_estate_schema(), "Agents list properties."))
    result = generator.generate("Create a CRM for real estate agents")

    assert result.reasoning == "Agents list properties."
    assert [t["name"] for t in result.schema["tables"]] == ["agents", "properties", "showings"]
    assert {"from_table": "showings", "from_column": "property_id", "to_table": "properties",
            "to_column": "id", "type": "many-to-one"} in result.schema["relationships"]
    assert sdk.responses.calls[0]["input"] == 'Generate a CRM database schema for: "Create a CRM for real estate agents"'


def test_code_fences_and_bare_schema_are_accepted():
    text = "```json\n" + json.dumps(real_estate_schema()) + "\n```"
    result = parse_generation(text, "real estate crm")
    assert result.schema["version"] == "1.0.0"
    assert result.reasoning == 'Generated 3 table(s) based on prompt: "real estate crm".'


@pytest.mark.parametrize("text", ["not json at all", "[1, 2, 3]", ""])
def test_unparseable_output_is_a_generation_failure(text):
    with pytest.raises(GenerationFailure):
        parse_generation(text, "p")


def test_modify_prompt_embeds_existing_schema():
    prompt = build_prompt("Add a phone column to agents", real_estate_schema())
    assert prompt.startswith('Modify this existing schema based on the user\'s request: "Add a phone column to agents"')
    assert '"showings"' in prompt
    assert "COMPLETE modified schema" in prompt


def test_instructions_embed_json_schema():
    text = build_instructions()
    assert "{crm_schema}" not in text
    assert "ui_hints" in text


def test_model_outage_becomes_generation_failure():
    generator, _ = generator_with(RuntimeError("timeout"))
    with pytest.raises(GenerationFailure, match="unavailable"):
        generator.generate("Create a CRM for gyms")


def test_missing_model_is_a_generation_failure():
    with pytest.raises(GenerationFailure, match="OPENAI_API_KEY"):
        SchemaGenerator(None).generate("Create a CRM for gyms")
