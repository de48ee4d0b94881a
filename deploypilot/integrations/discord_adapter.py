"""Discord webhook notifier implementation."""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import requests

from deploypilot.core.exceptions import SideEffectError
from deploypilot.integrations.base import INotifier

logger = logging.getLogger(__name__)

COLOR_SUCCESS = 0x00FF00
COLOR_FAILURE = 0xFF0000
MAX_DESCRIPTION = 4096
MAX_FIELD_VALUE = 1024


class DiscordNotifier(INotifier):
    """Posts one embed per notification to a Discord webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_payload(
        self,
        title: str,
        message: str,
        success: bool,
        metadata: Dict[str, str],
    ) -> Dict:
        fields = [
            {"name": key, "value": (value or "-")[:MAX_FIELD_VALUE], "inline": True}
            for key, value in metadata.items()
        ]
        embed = {
            "title": title,
            "description": message[:MAX_DESCRIPTION],
            "color": COLOR_SUCCESS if success else COLOR_FAILURE,
            "fields": fields,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return {"embeds": [embed]}

    def send(
        self,
        title: str,
        message: str,
        success: bool,
        metadata: Dict[str, str],
    ) -> None:
        if not self.webhook_url:
            raise SideEffectError("Discord webhook URL is not configured")

        payload = self.build_payload(title, message, success, metadata)
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SideEffectError(f"Failed to send Discord notification: {e}")

        if not 200 <= response.status_code < 300:
            raise SideEffectError(
                f"Discord API returned status {response.status_code}",
                details={"status": response.status_code},
            )

        logger.info("Discord notification sent: %s (success=%s)", title, success)
