from functools import lru_cache
import json
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


def _parse_models_map(value: str) -> dict[str, list[str]]:
    # AI_ALLOWED_MODELS='{"gemini": ["gemini-2.5-flash"], "openai": ["gpt-4o-mini"]}'
    if not value or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    result: dict[str, list[str]] = {}
    for provider, models in parsed.items():
        if isinstance(models, str):
            models = [models]
        if not isinstance(models, list):
            continue
        result[str(provider).lower().strip()] = [str(m).strip() for m in models if str(m).strip()]
    return result


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    cors_allow_origins_raw: str = Field(
        default="",
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS"),
    )

    # --- Analysis engine ---
    enable_analysis_engine: bool = True
    analysis_batch_size: int = 50
    analysis_batch_delay_seconds: float = 1.5
    analysis_reset_page_size: int = 1000
    analysis_log_limit: int = 50
    analysis_max_consecutive_failures: int = 5

    # --- AI ---
    ai_feedback_provider: str = Field(
        default="mock",
        validation_alias=AliasChoices("AI_FEEDBACK_PROVIDER"),
    )
    ai_feedback_model: str = Field(
        default="",
        validation_alias=AliasChoices("AI_FEEDBACK_MODEL", "AI_MODEL"),
    )
    ai_allowed_providers_raw: str = Field(
        default="mock,gemini,openai,claude",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_allowed_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_ALLOWED_MODELS"),
    )
    enable_ai_overrides: bool = False
    ai_timeout_seconds: float = 8.0
    ai_feedback_timeout_seconds: float = 60.0
    ai_temperature: float = 0.2
    ai_max_tokens: int = 8192
    ai_debug_store_raw: bool = False
    institution_name: str = "the institution"

    gemini_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    @property
    def cors_allow_origins(self) -> list[str]:
        return _parse_list_value(self.cors_allow_origins_raw)

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    @property
    def ai_allowed_models(self) -> dict[str, list[str]]:
        return _parse_models_map(self.ai_allowed_models_raw)

    @property
    def effective_batch_size(self) -> int:
        return int(max(1, min(200, self.analysis_batch_size or 50)))

    @property
    def effective_reset_page_size(self) -> int:
        return int(max(1, min(5000, self.analysis_reset_page_size or 1000)))


@lru_cache
def get_settings() -> Settings:
    return Settings()
