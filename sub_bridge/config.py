"""
Configuration management for the sub_bridge package.
This module handles configuration loading, validation and logging setup.
"""

import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from .types import CONTEXT_OVERFLOW_MODES, ModelDefaults

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def parse_token_value(value, default_value=None):
    """Parse token value that can be in 'k' format (16k, 200k) or specific number.

    Args:
        value: The value to parse (can be string like "16k", "200k" or integer)
        default_value: Default value to return if parsing fails

    Returns:
        Integer token count

    Examples:
        parse_token_value("16k") -> 16384
        parse_token_value("200000") -> 200000
        parse_token_value(8192) -> 8192
    """
    if value is None:
        return default_value

    if isinstance(value, int):
        return value

    if isinstance(value, str):
        value = value.strip().lower()

        # Handle 'k' suffix format
        if value.endswith("k"):
            try:
                num = float(value[:-1])
                return int(num * 1024)
            except (ValueError, TypeError):
                logger.warning(
                    f"Could not parse token value '{value}', using default {default_value}"
                )
                return default_value

        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(
                f"Could not parse token value '{value}', using default {default_value}"
            )
            return default_value

    logger.warning(
        f"Unexpected token value type '{type(value)}' for value '{value}', using default {default_value}"
    )
    return default_value


def parse_overflow_mode(value: str | None) -> str:
    """Validate a context overflow policy, falling back to truncation."""
    if not value:
        return "truncate"
    mode = value.strip().lower()
    if mode not in CONTEXT_OVERFLOW_MODES:
        logger.warning(
            f"Unknown context overflow mode '{value}', expected one of {CONTEXT_OVERFLOW_MODES}; using 'truncate'"
        )
        return "truncate"
    return mode


class Config:
    """Proxy server configuration, built once and passed to the app factory"""

    def __init__(self):
        # Server configuration
        self.host = os.environ.get("HOST", ModelDefaults.DEFAULT_HOST)
        self.port = int(os.environ.get("PORT", str(ModelDefaults.DEFAULT_PORT)))
        self.log_level = os.environ.get("LOG_LEVEL", ModelDefaults.DEFAULT_LOG_LEVEL)
        self.log_file_path = os.environ.get(
            "LOG_FILE_PATH",
            Path(__file__).resolve().parent / "server.log",
        )

        # Upstream endpoints
        self.anthropic_base_url = os.environ.get(
            "ANTHROPIC_BASE_URL", ModelDefaults.ANTHROPIC_BASE_URL
        ).rstrip("/")
        self.openai_base_url = os.environ.get(
            "OPENAI_BASE_URL", ModelDefaults.OPENAI_BASE_URL
        ).rstrip("/")
        self.chatgpt_base_url = os.environ.get(
            "CHATGPT_BASE_URL", ModelDefaults.CHATGPT_BASE_URL
        ).rstrip("/")
        self.chatgpt_default_model = os.environ.get(
            "CHATGPT_DEFAULT_MODEL", ModelDefaults.CHATGPT_DEFAULT_MODEL
        )
        self.chatgpt_instructions_file = os.environ.get("CHATGPT_INSTRUCTIONS_FILE")

        # Context window policy
        self.context_overflow = parse_overflow_mode(os.environ.get("CONTEXT_OVERFLOW"))
        self.max_context_tokens = parse_token_value(
            os.environ.get("MAX_CONTEXT_TOKENS"), ModelDefaults.MAX_CONTEXT_TOKENS
        )
        self.context_safety_margin = float(
            os.environ.get(
                "CONTEXT_SAFETY_MARGIN", str(ModelDefaults.CONTEXT_SAFETY_MARGIN)
            )
        )

        # Extra model aliases (YAML mapping alias -> model id)
        self.model_aliases_file = os.environ.get("MODEL_ALIASES_FILE")

        # Bridge token secret and Claude OAuth refresh
        self.secret_file = Path(
            os.environ.get(
                "SUB_BRIDGE_SECRET_FILE",
                str(Path.home() / ".sub-bridge" / "secret.key"),
            )
        ).expanduser()
        self.anthropic_oauth_client_id = os.environ.get(
            "ANTHROPIC_OAUTH_CLIENT_ID", ModelDefaults.CLAUDE_OAUTH_CLIENT_ID
        )

        # Request limits and timeouts
        self.request_timeout = float(
            os.environ.get(
                "REQUEST_TIMEOUT", str(ModelDefaults.DEFAULT_REQUEST_TIMEOUT)
            )
        )
        self.max_retries = int(
            os.environ.get("MAX_RETRIES", str(ModelDefaults.DEFAULT_MAX_RETRIES))
        )

    @property
    def verbose(self) -> bool:
        return self.log_level.lower() == "debug"

    @property
    def effective_context_limit(self) -> int:
        return int(self.max_context_tokens * (1 - self.context_safety_margin))


# Create a filter to block any log messages containing specific strings
class MessageFilter(logging.Filter):
    def filter(self, record):
        blocked_phrases = [
            "HTTP Request:",
        ]

        if hasattr(record, "msg") and isinstance(record.msg, str):
            for phrase in blocked_phrases:
                if phrase in record.msg:
                    return False
        return True


# Custom formatter for routing logs
class ColorizedFormatter(logging.Formatter):
    """Custom formatter to highlight routing decisions"""

    BLUE = "\033[94m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def format(self, record):
        if isinstance(record.msg, str) and "ROUTE" in record.msg:
            return f"{self.BOLD}{self.GREEN}{record.getMessage()}{self.RESET}"
        if record.levelno >= logging.ERROR:
            return f"{self.RED}{super().format(record)}{self.RESET}"
        if record.levelno == logging.WARNING:
            return f"{self.YELLOW}{super().format(record)}{self.RESET}"
        return super().format(record)


def setup_logging(config: Config):
    """Setup logging configuration to be idempotent."""
    # Handlers are only added once to the root logger, so uvicorn reload
    # workers don't duplicate log lines.
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        return

    try:
        log_dir = Path(config.log_file_path).parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)

        root_logger.setLevel(getattr(logging, config.log_level.upper()))
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

        file_handler = logging.FileHandler(config.log_file_path, mode="a")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(
            ColorizedFormatter("%(asctime)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(stream_handler)

        root_logger.addFilter(MessageFilter())

        # Handlers are inherited from the root logger.
        logging.getLogger("uvicorn").setLevel(logging.INFO)
        logging.getLogger("uvicorn.error").setLevel(logging.INFO)
        uvicorn_access_logger = logging.getLogger("uvicorn.access")
        uvicorn_access_logger.setLevel(logging.INFO)
        uvicorn_access_logger.propagate = True
        if not config.verbose:
            logging.getLogger("httpx").setLevel(logging.WARNING)

        logger.info("✅ Logging configured for server.")

    except OSError as e:
        print(f"🔴 Error setting up logging: {e}")
        sys.exit(1)
