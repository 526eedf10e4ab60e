"""
Discord webhook notifier.
"""

import logging

import requests

from stashly import constants


logger = logging.getLogger(__name__)

SUCCESS_COLOR = 1498748
FAILURE_COLOR = 14554702
DELETION_FAILURE_COLOR = 14590998

REQUEST_TIMEOUT = 10


class NotificationError(Exception):
    """Raised when a webhook message cannot be delivered."""
    pass


class DiscordNotifier:
    """Sends backup notifications to a Discord channel via webhook."""

    def __init__(self, webhook: str, instance_id: str, enabled: bool = True):
        self.webhook = webhook
        self.instance_id = instance_id
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.webhook)

    def _message(self, content: str, embed: dict) -> dict:
        return {
            'embeds': [embed],
            'components': [],
            'username': constants.PROGRAM_IDENTIFIER,
            'content': f"{content} - *{self.instance_id}*",
        }

    def send(self, message: dict):
        """
        POST a message to the webhook.

        Raises:
            NotificationError: On transport errors or a non-2xx response
        """
        try:
            response = requests.post(self.webhook, json=message, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise NotificationError(f"Discord webhook request failed: {e}")

        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"Discord webhook returned {response.status_code}: {response.text[:200]}"
            )

    def notify_backup_success(self, databases: int, key: str):
        self.send(self._message(
            '**PG-DB Backup Successful**',
            {
                'color': SUCCESS_COLOR,
                'fields': [
                    {'name': 'Key', 'value': key, 'inline': False},
                    {'name': 'Databases', 'value': str(databases), 'inline': False},
                ],
            }
        ))

    def notify_backup_failure(self, error: str):
        self.send(self._message(
            '**PG-DB Backup Failed**',
            {'title': 'Error', 'description': error, 'color': FAILURE_COLOR}
        ))

    def notify_purge_failure(self, error: str):
        self.send(self._message(
            '**PG-DB Backup Deletion Failed**',
            {'title': 'Error', 'description': error, 'color': DELETION_FAILURE_COLOR}
        ))
