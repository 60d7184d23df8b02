"""Configuration and environment handling for Protocol OS."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class ExecutionConfig:
    """Execution defaults (timeouts, retries, redirects)."""

    def __init__(self):
        self.request_timeout_s: float = float(os.getenv("PO_REQUEST_TIMEOUT_S", "30"))
        self.max_retries: int = int(os.getenv("PO_MAX_RETRIES", "3"))
        self.retry_base_delay_s: float = float(os.getenv("PO_RETRY_BASE_DELAY_S", "1.0"))
        self.retry_non_idempotent: bool = _env_flag("PO_RETRY_NON_IDEMPOTENT", "1")
        self.follow_redirects: bool = _env_flag("PO_FOLLOW_REDIRECTS", "1")
        self.max_redirects: int = int(os.getenv("PO_MAX_REDIRECTS", "5"))
        self.verify_ssl: bool = _env_flag("PO_VERIFY_SSL", "1")
        self.user_agent: str = os.getenv("PO_USER_AGENT", "Protocol-OS/1.0")


class Config:
    """Central configuration object."""

    def __init__(self):
        # Load .env file if it exists
        env_path = Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        self.project_root = Path(__file__).parent.parent.parent

        # Logging
        self.log_level: str = os.getenv("PO_LOG_LEVEL", "INFO")

        # Run history ring size
        self.history_size: int = int(os.getenv("PO_HISTORY_SIZE", "50"))

        # Placeholder resolution
        self.strict_placeholders: bool = _env_flag("PO_STRICT_PLACEHOLDERS", "0")

        self.execution = ExecutionConfig()


# Global config instance
config = Config()
