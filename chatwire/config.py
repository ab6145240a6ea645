"""chatwire configuration management."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional


class ChatwireSettings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    # Transport
    driver: str = Field(default="openai_compat", description="Transport driver (openai_compat, gemini)")
    model: str = Field(default="gpt-4o-mini", description="Model identifier sent to the provider")
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    base_url: Optional[str] = Field(default=None, description="Provider base URL (driver default if unset)")
    request_timeout: float = Field(default=120.0, description="Network timeout for one model call, seconds")
    temperature: Optional[float] = Field(default=None, description="Sampling temperature (provider default if unset)")
    max_tokens: Optional[int] = Field(default=None, description="Output token cap")

    # Prompt shape
    transport_mode: Literal["text", "multimodal"] = Field(
        default="text",
        description="text = plain-text blocks only; multimodal = structured parts allowed",
    )
    image_mode: Literal["always", "once", "never"] = Field(
        default="once",
        description="always = forward every image, once = current round only, never = none",
    )
    recent_count: int = Field(default=20, description="Messages per contact in the history section")
    history_count: int = Field(default=0, description="Older messages available to dossier history items")
    narrative_count: int = Field(default=5, description="Narrative context lines per dossier")

    # Presentation
    user_name: str = Field(default="我", description="Display name for the user in prompts")
    timezone: Optional[str] = Field(default=None, description="IANA timezone for time labels (local if unset)")
    media_base_url: Optional[str] = Field(default=None, description="Base URL for relative image paths")

    model_config = {"env_prefix": "CHATWIRE_", "env_file": ".env", "extra": "ignore"}


def load_settings() -> ChatwireSettings:
    """Load settings from environment."""
    settings = ChatwireSettings()

    import logging
    logger = logging.getLogger("chatwire.config")
    if settings.recent_count <= 0:
        logger.warning(
            f"recent_count={settings.recent_count} leaves the history section empty; "
            "the model will only see pending operations"
        )
    if settings.transport_mode == "text" and settings.driver == "gemini" and settings.image_mode != "never":
        logger.warning(
            "Gemini driver in text mode: images are bound after macro expansion; "
            "use transport_mode=multimodal to keep continuation signatures"
        )
    if not settings.api_key:
        logger.warning("No CHATWIRE_API_KEY set; only offline commands (build, parse) will work")

    return settings
