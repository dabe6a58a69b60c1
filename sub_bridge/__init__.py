"""
Sub Bridge - an OpenAI Chat Completions proxy for Claude and ChatGPT subscriptions.

This package routes requests by API key, converts message formats and
translates upstream streams back into Chat Completions chunks.
"""

__version__ = "0.1.0"

from .config import Config
from .proxy import ProxyOrchestrator
from .server import create_app

__all__ = [
    "Config",
    "ProxyOrchestrator",
    "create_app",
]
