"""Configuration management for the tutor chat service."""

from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROVIDER_DEFAULT_BASE_URLS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # LLM Provider Configuration
    llm_provider: Literal["custom", "anthropic", "openai"] = "openai"
    llm_base_url: str = ""
    llm_api_key: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 800
    llm_timeout_seconds: float = 120.0

    # Image Generation Configuration (falls back to the LLM credentials)
    image_base_url: str = ""
    image_api_key: str = ""
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    image_quality: str = "high"
    image_style: str = "natural"
    image_timeout_seconds: float = 60.0
    visual_aids_enabled: bool = True

    @model_validator(mode="after")
    def _fill_default_urls(self) -> "Settings":
        """Fill in sensible endpoints and credentials if the caller left them blank."""
        if not self.llm_base_url:
            self.llm_base_url = _PROVIDER_DEFAULT_BASE_URLS.get(self.llm_provider, "")
        if not self.image_base_url:
            self.image_base_url = (
                self.llm_base_url if self.llm_provider != "anthropic"
                else _PROVIDER_DEFAULT_BASE_URLS["openai"]
            )
        if not self.image_api_key:
            self.image_api_key = self.llm_api_key
        return self

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_file: str = ""

    # Conversation Configuration
    history_window: int = 10
    max_input_length: int = 10000

    # Attachment Configuration
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_files_per_batch: int = 10
    upload_path_prefix: str = "homework"

    # Storage Configuration
    data_dir: str = "data"
    blob_dir: str = "blobs"
    public_base_url: str = "http://127.0.0.1:8000"
    personas_file: Optional[str] = None

    # Identity fallback when the shell does not forward a user
    default_user_id: str = "local-user"
    default_user_email: str = "local-user@localhost"

    @property
    def is_anthropic(self) -> bool:
        """Check if using Anthropic provider."""
        return self.llm_provider == "anthropic"

    @property
    def is_openai(self) -> bool:
        """Check if using OpenAI provider."""
        return self.llm_provider == "openai"

    @property
    def is_custom(self) -> bool:
        """Check if using custom provider."""
        return self.llm_provider == "custom"


# Global settings instance
settings = Settings()
