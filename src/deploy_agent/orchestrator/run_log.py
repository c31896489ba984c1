"""JSON run logs, one file per target deployment."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import DeploymentRun

logger = logging.getLogger(__name__)


class RunLogWriter:
    """Writes each run to `<log_dir>/<kind>_<target>_<timestamp>.json`."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._files: dict[str, Path] = {}
        self._lock = threading.Lock()

    def path_for(self, run: DeploymentRun) -> Path:
        with self._lock:
            path = self._files.get(run.run_id)
            if path is None:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                path = self.log_dir / f"{run.kind}_{run.target}_{timestamp}_{run.run_id}.json"
                self._files[run.run_id] = path
            return path

    def save(self, run: DeploymentRun, repo_url: Optional[str] = None) -> Path:
        path = self.path_for(run)
        payload = run.to_dict()
        payload["repo_url"] = repo_url
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
        return path

    def finalize(self, run: DeploymentRun, repo_url: Optional[str] = None) -> Path:
        path = self.save(run, repo_url)
        logger.info("📄 Log saved to: %s", path)
        return path
