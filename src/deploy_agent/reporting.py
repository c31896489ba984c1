"""Report run results to the triggering CI system."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class WebhookReporter:
    """POSTs run payloads as JSON to a webhook URL.

    Reporting never fails a deployment: errors are logged after the
    retries are used up.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self._sleep = sleep

    def report(self, payload: Dict[str, Any]) -> bool:
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.post(self.url, json=payload, timeout=self.timeout)
                if response.status_code >= 500:
                    raise requests.exceptions.HTTPError(
                        f"{response.status_code} from webhook", response=response
                    )
                response.raise_for_status()
                logger.debug("Reported run %s to webhook", payload.get("run_id"))
                return True
            except requests.exceptions.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else None
                if status is not None and status < 500:
                    logger.error("Webhook rejected run report: %s", exc)
                    return False
                error: Exception = exc
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
                error = exc

            if attempt < self.max_retries:
                wait_time = 2 ** (attempt - 1)
                logger.warning("Webhook report failed (%s). Retrying in %ss...", error, wait_time)
                self._sleep(wait_time)
            else:
                logger.error("Webhook report failed after %d attempts: %s", attempt, error)
        return False
