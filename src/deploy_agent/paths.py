"""Unified path constants for deploy-agent.

Local state lives under the .deploy-agent directory:
- .deploy-agent/logs/   # JSON run logs, one per target deployment
"""

from pathlib import Path

BASE_DIR = Path(".deploy-agent")

LOGS_DIR = BASE_DIR / "logs"

DEFAULT_CONFIG_PATH = Path("config/deploy_agent.json")


def get_logs_dir() -> Path:
    """Return the run log directory, creating it if needed."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    return LOGS_DIR
