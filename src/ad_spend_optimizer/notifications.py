"""
Notification adapters
"""

import logging
import os
from typing import Any, Dict, Optional

import requests

from .interfaces import Notifier

logger = logging.getLogger(__name__)


def notify_safely(notifier: Optional[Notifier], title: str, body: str) -> None:
    """Send a notification; delivery problems are logged and never propagate"""
    if notifier is None:
        return
    try:
        notifier.notify(title, body)
    except Exception as e:
        logger.warning(f"Notification '{title}' failed: {e}")


class LoggingNotifier(Notifier):
    """Writes notifications to the log"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def notify(self, title: str, body: str) -> None:
        self.logger.info(f"[notify] {title}: {body}")


class WebhookNotifier(Notifier):
    """
    Posts notifications as JSON to a webhook (Slack-compatible payload)

    The URL comes from NOTIFY_WEBHOOK_URL unless given in config.
    """

    def __init__(self, config: Dict[str, Any]):
        self.logger = logging.getLogger(__name__)
        self.url = os.getenv('NOTIFY_WEBHOOK_URL') or config.get('notify_webhook_url')
        self.timeout = config.get('notify_timeout_seconds', 10)
        if not self.url:
            raise ValueError("Missing webhook URL. Set environment variable: NOTIFY_WEBHOOK_URL")

    def notify(self, title: str, body: str) -> None:
        payload = {'text': f"*{title}*\n{body}", 'title': title, 'body': body}
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Error posting notification: {e}")
            raise
