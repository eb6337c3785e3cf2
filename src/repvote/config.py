"""
repvote/config.py

Configuration constants and data classes for repvote.

Values can be overridden per process through ``REPVOTE_*`` environment
variables (see ``VotingConfig.from_env``).
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import logging
import os

logger = logging.getLogger("repvote.config")


# Fixed-point scale (1.0 == WAD), shared by weights and multipliers
WAD = 10 ** 18

# Reputation multiplier bounds
MIN_MULTIPLIER = 3 * WAD // 10        # 0.3x
MAX_MULTIPLIER = 3 * WAD              # 3.0x
DEFAULT_MULTIPLIER = WAD              # 1.0x for unknown identities

# Vote limits
DEFAULT_MAX_CREDITS_PER_VOTE = 100

# Poll creation bounds
MIN_OPTIONS = 2
MAX_OPTIONS = 10
MAX_QUESTION_LENGTH = 200
MIN_POLL_DURATION = 24 * 60 * 60           # 1 day
MAX_POLL_DURATION = 30 * 24 * 60 * 60      # 30 days
MIN_WEIGHT_CAP = 2
MAX_WEIGHT_CAP = 20
DEFAULT_WEIGHT_CAP = 10
DEFAULT_POLL_DURATION = 7 * 24 * 60 * 60

# Registry
RECENT_POLLS_LIMIT = 100
DEFAULT_RECENT_POLLS = 10

# Test token faucet
FAUCET_AMOUNT = 1000

# Settlement / transport
DEFAULT_CONFIRMATION_TIMEOUT = 60.0   # seconds
DEFAULT_REFRESH_INTERVAL = 5.0        # seconds between read-model refreshes
DEFAULT_READ_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_RETRY_MAX_DELAY = 8.0

# Notification channel buffer per subscriber
DEFAULT_NOTIFICATION_BUFFER = 100

# REST API
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8080

ENV_PREFIX = "REPVOTE_"


@dataclass
class VotingConfig:
    """Runtime settings for a repvote deployment."""
    max_credits_per_vote: int = DEFAULT_MAX_CREDITS_PER_VOTE
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    read_retries: int = DEFAULT_READ_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    notification_buffer: int = DEFAULT_NOTIFICATION_BUFFER
    recent_polls_limit: int = RECENT_POLLS_LIMIT
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "VotingConfig":
        """
        Build a config from ``REPVOTE_<FIELD>`` environment variables.

        Malformed values are ignored (the default is kept) and logged.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            VotingConfig instance
        """
        environ = os.environ if environ is None else environ
        config = cls()
        for name, default in asdict(config).items():
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            try:
                value = type(default)(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{name.upper()}={raw!r}")
                continue
            setattr(config, name, value)
        return config
