"""Core configuration and utilities for ClawChat."""

from clawchat.core.config import settings
from clawchat.core.logging import setup_logging

__all__ = ["settings", "setup_logging"]
