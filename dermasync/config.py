"""Configuration from the environment and logging setup."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from rich.logging import RichHandler

load_dotenv(override=True)

LOG_FORMAT = "%(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ["httpx", "httpcore", "openai", "urllib3"]


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring non-numeric %s=%r, using %s", name, value, default
        )
        return default


@dataclass
class Settings:
    """Runtime settings. Build with `Settings.from_env()`."""
    db_path: Path = Path("data/dermasync.db")
    key_dir: Path = Path("~/.dermasync/keys").expanduser()
    openai_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    write_timeout: float = 10.0
    add_timeout: float = 15.0
    analysis_timeout: float = 30.0
    reachability_url: str = "https://clients3.google.com/generate_204"
    reachability_interval: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            db_path=Path(os.environ.get("DERMASYNC_DB_PATH", defaults.db_path)),
            key_dir=Path(os.environ.get("DERMASYNC_KEY_DIR", defaults.key_dir)).expanduser(),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            llm_model=os.environ.get("LLM_MODEL", defaults.llm_model),
            write_timeout=_env_float("DERMASYNC_WRITE_TIMEOUT", defaults.write_timeout),
            add_timeout=_env_float("DERMASYNC_ADD_TIMEOUT", defaults.add_timeout),
            analysis_timeout=_env_float("DERMASYNC_ANALYSIS_TIMEOUT", defaults.analysis_timeout),
            reachability_url=os.environ.get("DERMASYNC_REACHABILITY_URL", defaults.reachability_url),
            reachability_interval=_env_float(
                "DERMASYNC_REACHABILITY_INTERVAL", defaults.reachability_interval
            ),
            log_level=os.environ.get("DERMASYNC_LOG_LEVEL", defaults.log_level).upper(),
        )


def setup_logging(level: str | int = logging.INFO) -> None:
    """
    Configure application-wide logging through rich.

    Args:
        level: Logging level name or number (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("dermasync").debug("Logging initialized")
