# llm_client.py
import time
import logging
import inspect
from typing import Any, Dict, Optional, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

__all__ = [
    "LLMClient",
    "TextResponse",
    "LLMError",
    "build_openai_client",
]

# =========================
# Public data structures
# =========================

@dataclass
class TextResponse:
    """
    Normalized text response returned by LLMClient.
    """
    text: str
    raw: Dict[str, Any]
    # Optional usage metadata
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    latency: Optional[float] = None  # seconds


class LLMError(RuntimeError):
    """
    Typed exception raised for LLM failures.
    Keeps LLM concerns isolated from pipeline logic.
    """
    pass


# =========================
# LLM Client
# =========================

class LLMClient:
    """
    Thin, reusable wrapper around an LLM SDK client (OpenAI Responses API).

    Responsibilities:
    - Request execution
    - Retry / backoff
    - Capability detection
    - Response normalization

    Non-responsibilities:
    - No schema knowledge
    - No prompt construction
    - No persistence
    """

    def __init__(
        self,
        client: Any,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.5,
        on_rate_limit: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._on_rate_limit = on_rate_limit
        self._sleep = sleep

        # SDK capability detection (best-effort)
        self._capabilities = self._detect_capabilities()

    # -------------------------
    # Public API
    # -------------------------

    def create_text_response(
        self,
        model: str,
        prompt: str,
        *,
        instructions: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> TextResponse:
        """
        Execute a text-generation request and return a normalized response.
        """
        last_err: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            try:
                kwargs: Dict[str, Any] = {
                    "model": model,
                    "input": prompt,
                }

                if instructions and "instructions" in self._capabilities:
                    kwargs["instructions"] = instructions
                elif instructions:
                    kwargs["input"] = f"{instructions}\n\n{prompt}"

                if response_format is not None and "text" in self._capabilities:
                    kwargs["text"] = {"format": response_format}

                if temperature is not None and "temperature" in self._capabilities:
                    kwargs["temperature"] = temperature

                if max_output_tokens is not None and "max_output_tokens" in self._capabilities:
                    kwargs["max_output_tokens"] = max_output_tokens

                if "timeout" in self._capabilities:
                    kwargs["timeout"] = self._timeout

                logger.debug(
                    "LLM request: model=%s, prompt_len=%d, instructions=%s, structured=%s",
                    model,
                    len(prompt),
                    bool(instructions),
                    bool(response_format),
                )

                start_ts = time.perf_counter()
                response = self._client.responses.create(**kwargs)
                latency = time.perf_counter() - start_ts

                raw_dict = self._to_dict(response)
                usage = raw_dict.get("usage") or {}

                return TextResponse(
                    text=self._extract_text(response),
                    raw=raw_dict,
                    input_tokens=usage.get("input_tokens"),
                    output_tokens=usage.get("output_tokens"),
                    latency=latency,
                )

            except TypeError:
                # Programming / integration error → fail fast
                raise

            except Exception as e:
                last_err = e
                logger.warning(
                    "LLM call failed (attempt %d/%d): %s",
                    attempt,
                    self._max_retries,
                    e,
                )

                # Best-effort rate-limit signal
                if self._on_rate_limit and self._looks_like_rate_limit(e):
                    try:
                        self._on_rate_limit(attempt)
                    except Exception:
                        logger.debug("on_rate_limit hook failed", exc_info=True)

                if attempt < self._max_retries:
                    self._sleep(self._backoff_base ** attempt)

        raise LLMError("LLM request failed after retries") from last_err

    # -------------------------
    # Capability detection
    # -------------------------

    def _detect_capabilities(self) -> set[str]:
        """
        Introspect the SDK to see which kwargs are supported.
        """
        try:
            fn = self._client.responses.create
            sig = inspect.signature(fn)
            return set(sig.parameters.keys())
        except Exception:
            return set()

    # -------------------------
    # Response normalization
    # -------------------------

    def _extract_text(self, response: Any) -> str:
        """
        Best-effort text extraction across SDK versions.
        """
        chunks: list[str] = []
        try:
            if getattr(response, "output_text", None):
                return response.output_text

            output = getattr(response, "output", None)
            if isinstance(output, list):
                for block in output:
                    if not isinstance(block, dict):
                        continue
                    content = block.get("content")
                    if isinstance(content, list):
                        for c in content:
                            if isinstance(c, dict) and c.get("type") == "output_text":
                                chunks.append(c.get("text", ""))
        except Exception:
            logger.exception("Failed to extract text from LLM response")
            raise

        if chunks:
            return "".join(chunks)

        if hasattr(response, "text"):
            return str(response.text)

        return str(response)

    def _to_dict(self, response: Any) -> Dict[str, Any]:
        """
        Convert SDK response into a serializable dict (best-effort).
        """
        try:
            if hasattr(response, "to_dict") and callable(getattr(response, "to_dict")):
                return response.to_dict()

            if hasattr(response, "model_dump"):
                try:
                    return response.model_dump(warnings="none")
                except TypeError:
                    return response.model_dump()
        except Exception:
            logger.exception("Failed to convert LLM response to dict")

        # Last-resort fallback
        return {"repr": repr(response)}

    # -------------------------
    # Utilities
    # -------------------------

    @staticmethod
    def _looks_like_rate_limit(exc: Exception) -> bool:
        """
        Heuristic check to detect rate-limit-like failures
        without importing provider-specific exception types.
        """
        msg = str(exc).lower()
        return any(
            token in msg
            for token in ("rate limit", "too many requests", "429")
        )


def build_openai_client(api_key: Optional[str], **kwargs) -> LLMClient:
    """
    Construct an LLMClient around the OpenAI SDK.
    Raises LLMError when no API key is configured.
    """
    if not api_key:
        raise LLMError("OPENAI_API_KEY is not configured")

    from openai import OpenAI

    return LLMClient(OpenAI(api_key=api_key), **kwargs)
