"""chatwire: chat history to prompt, model reply back to chat events."""

__version__ = "0.4.0"
