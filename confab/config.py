"""Settings via pydantic-settings with CONFAB_ env prefix.

Third-party API keys use validation_alias to read the same unprefixed
env vars the provider tooling uses, so a single .env file drives both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONFAB_", env_file=".env")

    log_level: str = "info"

    # License unlocks the built-in OCR fallback and parse_link
    license_key: str = ""

    # OCR -- a user-configured model always wins over the built-in one
    ocr_provider: str = ""
    ocr_model: str = ""
    builtin_ocr_provider: str = "chatbox-ai"
    builtin_ocr_model: str = "chatbox-ocr-1"
    builtin_ocr_provider_name: str = "Chatbox AI"

    # Knowledge base
    kb_manifest_page_size: int = 50

    # Web tools
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_result_count: int = 5
    web_search_daily_limit: int = 100
    web_fetch_max_chars: int = 50000
    parse_link_max_chars: int = 12000

    # Context selection
    max_context_messages: int | None = None
    keep_tool_call_rounds: int = 2

    # Compaction
    compaction_enabled: bool = True
    compaction_threshold: float = 0.6
    compaction_output_reserve: int = 32000
    compaction_keep_recent_tokens: int = 8000
    summary_language: str = "English"

    # Prompt-engineering fallback search
    search_router: Literal["prompt", "web-first", "kb-first"] = "prompt"

    @model_validator(mode="after")
    def _validate_compaction(self) -> "Settings":
        if not 0.0 < self.compaction_threshold <= 1.0:
            raise ValueError(
                f"compaction_threshold ({self.compaction_threshold}) must be in (0, 1]"
            )
        if self.compaction_output_reserve < 0:
            raise ValueError("compaction_output_reserve must be >= 0")
        return self

    @property
    def has_user_ocr_model(self) -> bool:
        return bool(self.ocr_provider and self.ocr_model)

    @property
    def is_pro(self) -> bool:
        return bool(self.license_key)
