"""Webhook notifications for borgrunner."""

from typing import Optional

import requests


class NotificationService:
    """Fire-and-forget webhook POSTs; delivery failures are only logged."""

    TIMEOUT_SECONDS = 10

    def __init__(self, webhook_url: Optional[str], logger, requests_module=requests):
        self.webhook_url = webhook_url
        self.logger = logger
        self.requests = requests_module

    def send(self, status: str, message: str) -> bool:
        if not self.webhook_url:
            return False

        self.logger.info("Sending %s notification...", status)
        try:
            response = self.requests.post(
                self.webhook_url,
                json={"content": message},
                timeout=self.TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except self.requests.RequestException as exc:
            self.logger.warning("Notification delivery failed: %s", exc)
            return False
        return True
