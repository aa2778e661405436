"""LLM provider abstraction via LiteLLM Router.

Backs the AI conflict adjudicator with:
- Claude Sonnet 4 as the primary reasoning model
- GPT-4o as fallback when Claude is unavailable
- Prompt injection screening of record values before they reach the model
- Caller metadata (installation, actor) on every call for cost tracking
"""

from __future__ import annotations

import re

import structlog
from litellm import Router

from src.pmsync.config import get_settings

logger = structlog.get_logger(__name__)

# ── Prompt Injection Detection ────────────────────────────────────────────────

# External PM tools hold free text written by anyone with access to the
# project, so record values are screened before they are placed in a prompt.
_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+instructions|"
            r"disregard\s+(all\s+)?(your\s+)?instructions|"
            r"override\s+(all\s+)?(your\s+)?instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|print|repeat)\s+(your\s+)?(system\s+prompt|instructions)|"
            r"repeat\s+everything\s+above",
            re.IGNORECASE,
        ),
    ),
    (
        "role_hijacking",
        re.compile(
            r"you\s+are\s+now\s+|"
            r"pretend\s+(to\s+be|you\s+are)|"
            r"from\s+now\s+on\s+you\s+are",
            re.IGNORECASE,
        ),
    ),
    (
        "control_characters",
        re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}"),
    ),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Check text for common prompt injection patterns.

    Returns:
        Tuple of (is_injection, pattern_name).
    """
    for pattern_name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "llm.prompt_injection_detected",
                pattern=pattern_name,
                text_preview=text[:100],
            )
            return True, pattern_name
    return False, None


def sanitize_messages(messages: list[dict]) -> list[dict]:
    """Strip injection patterns from non-system messages.

    System messages are trusted and never modified.
    """
    sanitized = []
    for msg in messages:
        content = msg.get("content", "")
        if msg.get("role") == "system" or not content:
            sanitized.append(msg)
            continue

        is_injection, pattern_name = detect_prompt_injection(content)
        if not is_injection:
            sanitized.append(msg)
            continue

        cleaned = content
        for _, pattern in _INJECTION_PATTERNS:
            cleaned = pattern.sub("[removed]", cleaned)
        logger.warning(
            "llm.prompt_injection_sanitized",
            role=msg.get("role"),
            pattern=pattern_name,
            original_length=len(content),
            cleaned_length=len(cleaned),
        )
        sanitized.append({**msg, "content": cleaned})

    return sanitized


# ── LLM Service ──────────────────────────────────────────────────────────────


class LLMService:
    """LLM provider abstraction with LiteLLM Router.

    Configures Claude Sonnet 4 as primary reasoning model with GPT-4o as
    fallback. If no API key is configured the router is None and every call
    raises RuntimeError, which the conflict resolver turns into a fallback.
    """

    def __init__(self) -> None:
        settings = get_settings()

        model_list = []

        if settings.ANTHROPIC_API_KEY:
            model_list.append({
                "model_name": "reasoning",
                "litellm_params": {
                    "model": "anthropic/claude-sonnet-4-20250514",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })

        if settings.OPENAI_API_KEY:
            model_list.append({
                "model_name": "reasoning",
                "litellm_params": {
                    "model": "openai/gpt-4o",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })

        if not model_list:
            logger.warning("llm.no_api_keys", detail="AI conflict adjudication unavailable")
            self.router = None
            return

        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )

    async def completion(
        self,
        messages: list[dict],
        model: str = "reasoning",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        metadata: dict | None = None,
        response_format: dict | None = None,
    ) -> dict:
        """Execute a completion call through the LiteLLM Router.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model group name.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature.
            metadata: Caller metadata (installation_id, actor, ...).
            response_format: Optional provider response format hint.

        Returns:
            Dict with content, model and usage.

        Raises:
            RuntimeError: If no LLM API keys are configured.
        """
        if not self.router:
            raise RuntimeError("No LLM API keys configured")

        kwargs: dict = {}
        if response_format is not None:
            kwargs["response_format"] = response_format

        response = await self.router.acompletion(
            model=model,
            messages=sanitize_messages(messages),
            max_tokens=max_tokens,
            temperature=temperature,
            metadata=metadata or {},
            **kwargs,
        )

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "usage": usage,
        }


# ── Singleton ─────────────────────────────────────────────────────────────────

_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Get or create the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
