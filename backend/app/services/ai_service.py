"""
AI Service — Multi-provider text generation (OpenAI GPT, Anthropic Claude) behind a JSON contract.
Used to draft recommendation prose. The caller supplies a JSON schema and validates the
result; this layer only guarantees that a JSON object comes back.
Transport failures are retried with backoff by the vendor SDKs (max_retries / timeout).
"""

import json
import logging
import re
from typing import Optional
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import get_settings
from app.crypto import decrypt_value
from app.exceptions import AIResponseFormatError, ConfigurationError
from app.models import AppSettings

logger = logging.getLogger(__name__)
settings = get_settings()

SYSTEM_PROMPT = """You are a senior performance marketing analyst for a South African e-commerce brand.
You advise on Meta and Google Ads budgets using the rule-engine output and business context you are given.

CRITICAL RULES — FOLLOW EVERY TIME:
- Respond ONLY with a single JSON object that matches the JSON schema provided. No prose, no markdown.
- Only propose actions for entities that appear in the rule results, using their exact ids.
- Keep to the rule engine's direction: SCALE → budget increase, REDUCE → budget decrease,
  PAUSE → PAUSE_ENTITY. Do not invent budget percentages beyond what the rules suggest.
- Use entity levels campaign/adset/ad for META and campaign/adgroup for GOOGLE.
- Amounts are in ZAR. Be specific and cite the numbers you were given as evidence."""

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def strip_code_fences(content: str) -> str:
    """Remove a wrapping ```json ... ``` fence if the model added one."""
    match = _FENCE_RE.match(content or "")
    return match.group(1) if match else (content or "").strip()


def parse_json_response(content: str) -> dict:
    text = strip_code_fences(content)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AIResponseFormatError(f"Model response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AIResponseFormatError("Model response is not a JSON object")
    return data


def _parse_model_id(model_id: Optional[str]) -> tuple[str, str]:
    """Parse 'provider:model' into (provider, model). Fallback to the configured default."""
    model_id = model_id or settings.llm_model
    if ":" in model_id:
        p, m = model_id.split(":", 1)
        return (p.strip().lower(), m.strip())
    return ("openai", model_id.strip())


class AIService:
    """Multi-provider JSON generation (OpenAI GPT, Anthropic Claude)."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
    ):
        self.provider, self.model = _parse_model_id(model_id)
        self._openai_client: Optional[AsyncOpenAI] = None
        self._anthropic_client: Optional[AsyncAnthropic] = None

        # Use passed keys, else env
        openai_key = openai_api_key or settings.openai_api_key
        anthropic_key = anthropic_api_key or settings.anthropic_api_key
        client_opts = dict(timeout=settings.llm_timeout_seconds, max_retries=settings.llm_max_retries)

        if self.provider == "openai":
            if not openai_key:
                raise ConfigurationError("OPENAI_API_KEY not configured. Add it in Settings or set OPENAI_API_KEY env.")
            self._openai_client = AsyncOpenAI(api_key=openai_key, **client_opts)
        elif self.provider == "anthropic":
            if not anthropic_key:
                raise ConfigurationError("ANTHROPIC_API_KEY not configured. Add it in Settings or set ANTHROPIC_API_KEY env.")
            self._anthropic_client = AsyncAnthropic(api_key=anthropic_key, **client_opts)
        else:
            raise ConfigurationError(f"Unknown AI provider: {self.provider}")

    async def _completion(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 4000,
        json_response: bool = False,
    ) -> str:
        """Call the appropriate provider's completion API."""
        if self.provider == "openai":
            kwargs = dict(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            if json_response:
                kwargs["response_format"] = {"type": "json_object"}
            response = await self._openai_client.chat.completions.create(**kwargs)
            return response.choices[0].message.content or ""

        # Anthropic: system messages go in a separate field
        system = ""
        anthropic_messages = []
        for m in messages:
            role = m.get("role", "user")
            content = m.get("content", "")
            if role == "system":
                system += content + "\n\n" if content else ""
            else:
                anthropic_messages.append({"role": "user" if role == "user" else "assistant", "content": content})

        response = await self._anthropic_client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system.strip(),
            messages=anthropic_messages,
        )
        if response.content and response.content[0].type == "text":
            return response.content[0].text
        return ""

    async def generate_json(self, prompt: str, schema: dict) -> dict:
        """
        Ask the model for a JSON object conforming to `schema`.
        Raises AIResponseFormatError when the reply is not a JSON object;
        schema conformance is checked by the caller.
        """
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "system",
                "content": "JSON schema for your response:\n" + json.dumps(schema, separators=(",", ":")),
            },
            {"role": "user", "content": prompt},
        ]
        content = await self._completion(messages, temperature=0.3, max_tokens=4000, json_response=True)
        return parse_json_response(content)


def create_ai_service(
    model_id: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    anthropic_api_key: Optional[str] = None,
) -> AIService:
    """Factory function to create an AI service instance. Keys from env or passed (from Settings)."""
    return AIService(
        model_id=model_id,
        openai_api_key=openai_api_key,
        anthropic_api_key=anthropic_api_key,
    )


async def load_ai_service(db: AsyncSession) -> AIService:
    """Build an AIService using the AppSettings row (default model, encrypted keys) when present."""
    result = await db.execute(select(AppSettings).limit(1))
    app_settings = result.scalar_one_or_none()
    if not app_settings:
        return create_ai_service()
    # Env keys take precedence over keys stored from the Settings UI
    return create_ai_service(
        model_id=app_settings.default_llm_id,
        openai_api_key=settings.openai_api_key or decrypt_value(app_settings.openai_api_key),
        anthropic_api_key=settings.anthropic_api_key or decrypt_value(app_settings.anthropic_api_key),
    )
