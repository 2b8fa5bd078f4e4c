"""AI audit: writes per-scope audit entries to the audit_logs table."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.analysis import AuditLog
from app.utils.alerting import alert_tracker

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)

# Falls back to "AI_RUN" for unknown scopes.
SCOPE_ACTIONS: dict[str, str] = {
    "feedback_analysis": "AI_FEEDBACK_BATCH_CLASSIFIED",
}


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    new_value: dict[str, Any] | None,
    actor_type: str = "SYSTEM",
    metadata: dict[str, Any] | None = None,
) -> None:
    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            new_value=new_value,
            actor_type=actor_type,
            audit_meta=metadata,
        )
    )
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def log_ai_run(
    db: Session,
    *,
    scope: str,
    entity_id: str,
    provider_result: ProviderResult,
    prompt_text: str,
    parsed_output: dict[str, Any] | None,
    extra_meta: dict[str, Any] | None = None,
) -> None:
    """Write an AI run audit entry.

    Prompt and response are always hashed; raw text is only stored when
    ``AI_DEBUG_STORE_RAW=true`` since prompts carry respondent comments.
    """
    settings = get_settings()

    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": hashlib.sha256(prompt_text.encode()).hexdigest(),
        "response_hash": hashlib.sha256(provider_result.raw_text.encode()).hexdigest(),
    }
    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text
    if extra_meta:
        metadata.update(extra_meta)

    create_audit_log(
        db,
        entity_type="ai",
        entity_id=entity_id,
        action=SCOPE_ACTIONS.get(scope, "AI_RUN"),
        new_value=parsed_output,
        metadata=metadata,
    )
