"""
Notification fan-out for backup outcomes.

Delivery is best effort: failures are logged and never propagate into
the backup pipeline.
"""

import logging
from typing import List

from stashly.models import BackupSucceeded, BackupFailed, PurgeFailed
from .discord import DiscordNotifier, NotificationError


logger = logging.getLogger(__name__)


class Notifier:
    """Dispatches notification events to every enabled channel."""

    def __init__(self, enabled: bool = False, channels: List = None):
        self.enabled = enabled
        self.channels = channels or []

    @classmethod
    def from_config(cls, config) -> 'Notifier':
        channels = []
        discord_config = config.notifiers.discord
        if discord_config.enabled:
            channels.append(DiscordNotifier(
                webhook=discord_config.webhook,
                instance_id=config.app.instance_id,
                enabled=discord_config.enabled
            ))
        return cls(enabled=config.notifiers.enabled, channels=channels)

    def notify(self, event):
        """
        Deliver an event to all enabled channels.

        Args:
            event: BackupSucceeded, BackupFailed or PurgeFailed
        """
        if not self.enabled:
            logger.info("Notifiers are disabled")
            return

        for channel in self.channels:
            if not channel.enabled:
                continue
            try:
                if isinstance(event, BackupSucceeded):
                    channel.notify_backup_success(event.database_count, event.key)
                elif isinstance(event, BackupFailed):
                    channel.notify_backup_failure(event.error)
                elif isinstance(event, PurgeFailed):
                    channel.notify_purge_failure(event.error)
                else:
                    raise ValueError(f"Unknown notification event: {event!r}")
            except NotificationError as e:
                logger.error(f"Failed to send notification via {type(channel).__name__}: {e}")

    def notify_backup_success(self, databases: int, key: str):
        self.notify(BackupSucceeded(databases, key))

    def notify_backup_failure(self, error):
        self.notify(BackupFailed(str(error)))

    def notify_purge_failure(self, error):
        self.notify(PurgeFailed(str(error)))


__all__ = ['Notifier', 'DiscordNotifier', 'NotificationError']
