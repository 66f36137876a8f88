"""Application settings: all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings.from_env()
    settings.validate()   # raises ValueError if ANTHROPIC_API_KEY is missing
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_HISTORY_PATH = Path(__file__).parent.parent / "data" / "history.db"


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── API Keys ────────────────────────────────────────────────────────────
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )

    # ── AI Models ───────────────────────────────────────────────────────────
    #: Fast tier used for notes, topic detection, quiz synthesis and grading.
    fast_model: str = field(
        default_factory=lambda: os.environ.get("EXAMECHO_FAST_MODEL", "claude-haiku-4-5")
    )
    #: Higher-capability tier, reserved for expert-difficulty quizzes.
    pro_model: str = field(
        default_factory=lambda: os.environ.get("EXAMECHO_PRO_MODEL", "claude-sonnet-4-5")
    )

    # ── Rate-limit handling ─────────────────────────────────────────────────
    retry_attempts: int = field(
        default_factory=lambda: int(os.environ.get("INFERENCE_RETRY_ATTEMPTS", "3"))
    )
    #: Seconds to wait before the first retry; doubled on every further retry.
    retry_base_delay: float = field(
        default_factory=lambda: float(os.environ.get("INFERENCE_RETRY_BASE_DELAY", "1.0"))
    )

    # ── History ─────────────────────────────────────────────────────────────
    history_path: Path = field(
        default_factory=lambda: Path(os.environ.get("HISTORY_PATH", str(DEFAULT_HISTORY_PATH)))
    )
    history_limit: int = field(
        default_factory=lambda: int(os.environ.get("HISTORY_LIMIT", "10"))
    )

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> Settings:
        """Load a ``.env`` file (if present) and build settings from the environment.

        Args:
            dotenv_path: Explicit ``.env`` file; searched for when omitted.
                Variables already set in the environment win.
        """
        load_dotenv(dotenv_path)
        return cls()

    def validate(self) -> None:
        """Raise ``ValueError`` if any required setting is missing or out of range."""
        if not self.anthropic_api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Copy .env.example to .env and add your key."
            )
        if self.retry_attempts < 1:
            raise ValueError("INFERENCE_RETRY_ATTEMPTS must be at least 1.")
        if self.retry_base_delay <= 0:
            raise ValueError("INFERENCE_RETRY_BASE_DELAY must be positive.")
        if self.history_limit < 1:
            raise ValueError("HISTORY_LIMIT must be at least 1.")
