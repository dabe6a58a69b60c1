#!/usr/bin/env python3
"""
Main entry point for the sub_bridge package.
This allows the package to be run as: python -m sub_bridge or sub-bridge
"""

import argparse
import os

import uvicorn

from .config import Config, setup_logging
from .types import CONTEXT_OVERFLOW_MODES


def main():
    """Main entry point for the package."""
    config = Config()

    parser = argparse.ArgumentParser(
        description="Run the Sub Bridge proxy (OpenAI Chat Completions to Claude/ChatGPT)."
    )
    parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload on code changes."
    )
    parser.add_argument("--host", default=config.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.port, help="Port to bind to")
    parser.add_argument(
        "--context-overflow",
        choices=CONTEXT_OVERFLOW_MODES,
        default=config.context_overflow,
        help="What to do when a request exceeds the Claude context window",
    )
    args = parser.parse_args()

    # The app is imported by uvicorn (possibly in a reload worker), so CLI
    # overrides travel through the environment the Config is built from.
    os.environ["CONTEXT_OVERFLOW"] = args.context_overflow
    config.context_overflow = args.context_overflow

    setup_logging(config)

    print(
        f"✅ Configuration loaded: context_overflow={config.context_overflow}, "
        f"max_context_tokens={config.max_context_tokens}"
    )
    print(
        f"🔀 Upstreams: Anthropic={config.anthropic_base_url} "
        f"ChatGPT={config.chatgpt_base_url} (default {config.chatgpt_default_model}) "
        f"OpenAI={config.openai_base_url}"
    )

    uvicorn.run(
        "sub_bridge.server:app",
        host=args.host,
        port=args.port,
        log_config=None,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
