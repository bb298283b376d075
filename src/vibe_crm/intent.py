# intent.py
"""
Intent Classifier: CREATE | MODIFY | INVALID, decided before any
generation spend.

Obviously destructive or raw-SQL prompts are rejected by local rules
without a model call. Everything else is classified by the model; a
RELATE label (wiring entities together) is folded into MODIFY, and any
answer outside the known labels is INVALID.
"""
import logging
import re
from typing import Optional

from vibe_crm.config import LLM_MODEL
from vibe_crm.llm_client import LLMClient, LLMError
from vibe_crm.models import CREATE, INVALID, MODIFY

logger = logging.getLogger(__name__)

CLASSIFIER_INSTRUCTIONS = """Classify the user's CRM schema intent. Respond with ONLY one word: CREATE, MODIFY, RELATE, or INVALID.

CREATE = New schema from scratch
MODIFY = Add/remove fields or tables in an existing schema
RELATE = Create relationships between entities
INVALID = Destructive operations, raw SQL, unrelated requests, or nonsense

Examples:
"Track sales deals" -> CREATE
"Add priority field to tasks" -> MODIFY
"Connect deals to companies" -> RELATE
"Delete all my data" -> INVALID
"What's the weather?" -> INVALID"""

_DESTRUCTIVE_PATTERNS = [
    re.compile(r"\b(drop|truncate|delete|wipe|erase|destroy|purge)\b.{0,20}\b(all|every|entire|whole)\b", re.I),
    re.compile(r"\b(drop|truncate)\s+(table|schema|database)\b", re.I),
    re.compile(r"\bdelete\s+from\b", re.I),
    re.compile(r"\b(alter|create)\s+(role|user|policy|function)\b", re.I),
    re.compile(r"\bgrant\s+\w+\s+on\b", re.I),
    re.compile(r"\b(run|execute|exec)\b.{0,20}\bsql\b", re.I),
    re.compile(r";\s*--"),
    re.compile(r"\bunion\s+select\b", re.I),
]

_MODIFY_HINTS = re.compile(
    r"\b(add|remove|rename|change|modify|extend|include|drop\s+the\s+\w+\s+(field|column)|connect|link|relate)\b",
    re.I,
)
_CREATE_HINTS = re.compile(
    r"\b(crm|track|manage|create|build|need|schema|database|pipeline|contacts?|customers?|deals?|leads?)\b",
    re.I,
)


def is_destructive(prompt: str) -> bool:
    return any(p.search(prompt) for p in _DESTRUCTIVE_PATTERNS)


def normalize_label(text: str) -> str:
    """Map a raw model answer onto the three-way intent."""
    words = re.findall(r"[A-Za-z]+", text or "")
    label = words[0].upper() if words else ""
    if label == "RELATE":
        return MODIFY
    if label in (CREATE, MODIFY):
        return label
    return INVALID


def heuristic_intent(prompt: str) -> str:
    if is_destructive(prompt):
        return INVALID
    if _MODIFY_HINTS.search(prompt):
        return MODIFY
    if _CREATE_HINTS.search(prompt):
        return CREATE
    return INVALID


class IntentClassifier:
    def __init__(self, llm_client: Optional[LLMClient] = None, *, model: str = LLM_MODEL):
        self._llm = llm_client
        self._model = model

    def classify(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            return INVALID

        if is_destructive(prompt):
            logger.info("Prompt rejected by destructive-intent rules")
            return INVALID

        if self._llm is None:
            return heuristic_intent(prompt)

        try:
            response = self._llm.create_text_response(
                self._model,
                prompt,
                instructions=CLASSIFIER_INSTRUCTIONS,
                max_output_tokens=16,
            )
        except LLMError:
            logger.warning("Intent model unavailable; using rule-based classification", exc_info=True)
            return heuristic_intent(prompt)

        intent = normalize_label(response.text)
        logger.info("Prompt classified as %s", intent)
        return intent
