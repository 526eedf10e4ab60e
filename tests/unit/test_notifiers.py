"""
Unit tests for notifications (stashly/notifiers).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from stashly.models import BackupSucceeded, BackupFailed, PurgeFailed
from stashly.notifiers import Notifier
from stashly.notifiers.discord import (
    DiscordNotifier,
    NotificationError,
    SUCCESS_COLOR,
    FAILURE_COLOR,
    DELETION_FAILURE_COLOR
)


WEBHOOK = 'https://discord.example/api/webhooks/1/abc'


def _response(status_code=204, text=''):
    return MagicMock(status_code=status_code, text=text)


class TestDiscordNotifier:
    """Test Discord webhook payloads."""

    @patch('stashly.notifiers.discord.requests.post')
    def test_backup_success_payload(self, mock_post):
        mock_post.return_value = _response()

        DiscordNotifier(WEBHOOK, 'db1').notify_backup_success(3, 'backups/db1/20240115123045/db_exports.zip')

        args, kwargs = mock_post.call_args
        assert args[0] == WEBHOOK
        payload = kwargs['json']
        assert payload['content'] == '**PG-DB Backup Successful** - *db1*'
        assert payload['username'] == 'Stashly'
        embed = payload['embeds'][0]
        assert embed['color'] == SUCCESS_COLOR
        assert {'name': 'Databases', 'value': '3', 'inline': False} in embed['fields']
        assert kwargs['timeout'] > 0

    @patch('stashly.notifiers.discord.requests.post')
    def test_backup_failure_payload(self, mock_post):
        mock_post.return_value = _response()

        DiscordNotifier(WEBHOOK, 'db1').notify_backup_failure('could not connect')

        payload = mock_post.call_args[1]['json']
        assert payload['content'] == '**PG-DB Backup Failed** - *db1*'
        assert payload['embeds'][0]['description'] == 'could not connect'
        assert payload['embeds'][0]['color'] == FAILURE_COLOR

    @patch('stashly.notifiers.discord.requests.post')
    def test_purge_failure_payload(self, mock_post):
        mock_post.return_value = _response()

        DiscordNotifier(WEBHOOK, 'db1').notify_purge_failure('denied')

        payload = mock_post.call_args[1]['json']
        assert payload['content'] == '**PG-DB Backup Deletion Failed** - *db1*'
        assert payload['embeds'][0]['color'] == DELETION_FAILURE_COLOR

    @patch('stashly.notifiers.discord.requests.post')
    def test_non_2xx_raises(self, mock_post):
        mock_post.return_value = _response(400, 'bad request')

        with pytest.raises(NotificationError, match='400'):
            DiscordNotifier(WEBHOOK, 'db1').notify_backup_failure('x')

    @patch('stashly.notifiers.discord.requests.post')
    def test_transport_error_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError('refused')

        with pytest.raises(NotificationError, match='refused'):
            DiscordNotifier(WEBHOOK, 'db1').notify_backup_failure('x')

    def test_enabled_requires_webhook(self):
        assert DiscordNotifier(WEBHOOK, 'db1').enabled
        assert not DiscordNotifier('', 'db1').enabled
        assert not DiscordNotifier(WEBHOOK, 'db1', enabled=False).enabled


class TestNotifier:
    """Test event fan-out."""

    def test_disabled_sends_nothing(self, caplog):
        channel = MagicMock(enabled=True)
        notifier = Notifier(enabled=False, channels=[channel])

        notifier.notify_backup_success(2, 'key')

        channel.notify_backup_success.assert_not_called()

    def test_dispatches_events(self):
        channel = MagicMock(enabled=True)
        notifier = Notifier(enabled=True, channels=[channel])

        notifier.notify(BackupSucceeded(2, 'key'))
        notifier.notify(BackupFailed('boom'))
        notifier.notify(PurgeFailed('denied'))

        channel.notify_backup_success.assert_called_once_with(2, 'key')
        channel.notify_backup_failure.assert_called_once_with('boom')
        channel.notify_purge_failure.assert_called_once_with('denied')

    def test_skips_disabled_channel(self):
        channel = MagicMock(enabled=False)
        Notifier(enabled=True, channels=[channel]).notify_backup_failure('boom')

        channel.notify_backup_failure.assert_not_called()

    def test_delivery_failure_is_logged_not_raised(self, caplog):
        channel = MagicMock(enabled=True)
        channel.notify_backup_failure.side_effect = NotificationError('webhook down')

        Notifier(enabled=True, channels=[channel]).notify_backup_failure(ValueError('boom'))

        channel.notify_backup_failure.assert_called_once_with('boom')
        assert 'webhook down' in caplog.text

    def test_unknown_event(self):
        notifier = Notifier(enabled=True, channels=[MagicMock(enabled=True)])

        with pytest.raises(ValueError):
            notifier.notify(object())

    def test_from_config(self, config):
        config.notifiers.enabled = True
        config.notifiers.discord.enabled = True
        config.notifiers.discord.webhook = WEBHOOK

        notifier = Notifier.from_config(config)

        assert notifier.enabled
        assert len(notifier.channels) == 1
        assert notifier.channels[0].instance_id == 'db1'

    def test_from_config_without_discord(self, config):
        notifier = Notifier.from_config(config)

        assert notifier.channels == []
        assert not notifier.enabled
