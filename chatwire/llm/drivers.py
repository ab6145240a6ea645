"""Driver registry for model transports.

Maps driver names to transport classes and instantiates them from settings.
"""

import logging
from typing import Optional, Type

from ..config import ChatwireSettings
from .google import GeminiTransport
from .openai import OpenAICompatTransport
from .provider import ModelTransport

logger = logging.getLogger("chatwire.llm.drivers")

# Driver name → Transport class mapping
_DRIVER_MAP: dict[str, Type[ModelTransport]] = {
    "openai_compat": OpenAICompatTransport,
    "gemini": GeminiTransport,
}


def get_driver(driver_name: str) -> Optional[Type[ModelTransport]]:
    return _DRIVER_MAP.get(driver_name)


def list_drivers() -> list[str]:
    """List all available driver names."""
    return list(_DRIVER_MAP.keys())


def create_transport(settings: ChatwireSettings) -> ModelTransport:
    """Instantiate the configured transport.

    Raises:
        RuntimeError: If the driver is unknown or no API key is configured
    """
    driver_class = get_driver(settings.driver)
    if not driver_class:
        raise RuntimeError(f"Unknown driver: {settings.driver} (available: {', '.join(list_drivers())})")
    if not settings.api_key:
        raise RuntimeError(f"No API key found for driver {settings.driver}. Set CHATWIRE_API_KEY.")

    kwargs = {
        "api_key": settings.api_key,
        "chat_model": settings.model,
        "timeout": settings.request_timeout,
    }
    if settings.base_url:
        kwargs["base_url"] = settings.base_url

    transport = driver_class(**kwargs)
    logger.info(f"Transport ready: driver={settings.driver}, model={settings.model}")
    return transport
