"""
Settings Router — Application-wide text-generation settings (default model, API keys).
Env vars take precedence over keys stored here.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import BaseModel
from typing import Optional
from app.database import get_db
from app.models import AppSettings
from app.config import get_settings
from app.crypto import encrypt_value, decrypt_value

router = APIRouter()
settings = get_settings()


# ── Available LLMs ─────────────────────────────────────────────────────
AVAILABLE_LLMS = [
    {"provider": "openai", "model": "gpt-4o", "label": "GPT-4o", "description": "Strong structured JSON output"},
    {"provider": "openai", "model": "gpt-4o-mini", "label": "GPT-4o Mini", "description": "Smaller, faster GPT-4o"},
    {"provider": "anthropic", "model": "claude-sonnet-4-20250514", "label": "Claude Sonnet 4", "description": "Balanced performance and capability"},
    {"provider": "anthropic", "model": "claude-3-5-haiku-20241022", "label": "Claude 3.5 Haiku", "description": "Fast, low cost"},
]


def _model_id(provider: str, model: str) -> str:
    return f"{provider}:{model}"


def _get_providers_from_row(row: AppSettings | None) -> dict:
    """Check env first, then stored (decrypted) keys."""
    openai_key = settings.openai_api_key
    anthropic_key = settings.anthropic_api_key
    if not openai_key and row and row.openai_api_key:
        openai_key = decrypt_value(row.openai_api_key)
    if not anthropic_key and row and row.anthropic_api_key:
        anthropic_key = decrypt_value(row.anthropic_api_key)
    return {
        "openai": bool(openai_key),
        "anthropic": bool(anthropic_key),
    }


async def _get_or_create_row(db: AsyncSession) -> AppSettings:
    result = await db.execute(select(AppSettings).limit(1))
    row = result.scalar_one_or_none()
    if not row:
        row = AppSettings(default_llm_id=None)
        db.add(row)
        await db.flush()
    return row


# ── Request/Response Models ───────────────────────────────────────────

class LLMSettingsResponse(BaseModel):
    default_llm_id: Optional[str]
    available_llms: list[dict]
    providers_configured: dict


class LLMSettingsUpdate(BaseModel):
    default_llm_id: Optional[str] = None


class APIKeysUpdate(BaseModel):
    openai_api_key: Optional[str] = None  # Set to "" to clear
    anthropic_api_key: Optional[str] = None  # Set to "" to clear


class APIKeysResponse(BaseModel):
    openai_configured: bool
    anthropic_configured: bool
    openai_source: str  # "env" | "settings" | "none"
    anthropic_source: str


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/api-keys", response_model=APIKeysResponse)
async def get_api_keys(db: AsyncSession = Depends(get_db)):
    """Get API key configuration status (never the keys themselves)."""
    result = await db.execute(select(AppSettings).limit(1))
    row = result.scalar_one_or_none()
    providers = _get_providers_from_row(row)
    openai_source = "env" if settings.openai_api_key else ("settings" if row and row.openai_api_key else "none")
    anthropic_source = "env" if settings.anthropic_api_key else ("settings" if row and row.anthropic_api_key else "none")
    return APIKeysResponse(
        openai_configured=providers["openai"],
        anthropic_configured=providers["anthropic"],
        openai_source=openai_source,
        anthropic_source=anthropic_source,
    )


@router.put("/api-keys")
async def update_api_keys(payload: APIKeysUpdate, db: AsyncSession = Depends(get_db)):
    """Save API keys (encrypted). Env vars take precedence when set."""
    row = await _get_or_create_row(db)

    if payload.openai_api_key is not None:
        row.openai_api_key = encrypt_value(payload.openai_api_key.strip()) if payload.openai_api_key.strip() else None
    if payload.anthropic_api_key is not None:
        row.anthropic_api_key = encrypt_value(payload.anthropic_api_key.strip()) if payload.anthropic_api_key.strip() else None

    return {"openai_configured": bool(row.openai_api_key), "anthropic_configured": bool(row.anthropic_api_key)}


@router.get("/llm", response_model=LLMSettingsResponse)
async def get_llm_settings(db: AsyncSession = Depends(get_db)):
    """
    Current default model and the options whose provider has an API key.
    Without a stored default the LLM_MODEL setting is used.
    """
    result = await db.execute(select(AppSettings).limit(1))
    row = result.scalar_one_or_none()
    providers = _get_providers_from_row(row)

    available = [llm for llm in AVAILABLE_LLMS if providers.get(llm["provider"], False)]
    default_id = (row.default_llm_id if row else None) or settings.llm_model

    return LLMSettingsResponse(
        default_llm_id=default_id,
        available_llms=available,
        providers_configured=providers,
    )


@router.put("/llm")
async def update_llm_settings(payload: LLMSettingsUpdate, db: AsyncSession = Depends(get_db)):
    """Set the default model used to draft recommendations ("provider:model")."""
    if payload.default_llm_id:
        provider = payload.default_llm_id.split(":", 1)[0] if ":" in payload.default_llm_id else ""
        if provider not in ("openai", "anthropic"):
            raise HTTPException(status_code=400, detail="default_llm_id must be 'openai:<model>' or 'anthropic:<model>'")

    row = await _get_or_create_row(db)
    row.default_llm_id = payload.default_llm_id or None
    return {"default_llm_id": row.default_llm_id}
