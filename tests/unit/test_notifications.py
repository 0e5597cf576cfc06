"""
Unit tests for webhook notifications (volvault/notifications.py).
"""

from unittest.mock import patch

import httpx

from volvault.notifications import COLORS, build_embed, send_webhook


def settings_getter(values):
    return lambda key, default=None: values.get(key, default)


WEBHOOK = {'discord_webhook_url': 'https://discord.example.com/api/webhooks/1/abc'}


class TestBuildEmbed:

    def test_embed_fields(self):
        embed = build_embed('success', 'Backup Completed', 'alpha', [{'name': 'Size', 'value': '1.00 MB'}])

        assert embed['title'].endswith('Backup Completed')
        assert embed['color'] == COLORS['success']
        assert embed['fields'] == [{'name': 'Size', 'value': '1.00 MB'}]
        assert embed['timestamp']

    def test_unknown_kind_uses_info_color(self):
        assert build_embed('other', 't', 'd')['color'] == COLORS['info']


class TestSendWebhook:

    @patch('httpx.post')
    def test_noop_when_unconfigured(self, mock_post):
        send_webhook('info', 'Backup Started', 'alpha', get_setting=settings_getter({}))

        mock_post.assert_not_called()

    @patch('httpx.post')
    def test_posts_embed(self, mock_post):
        mock_post.return_value = httpx.Response(204, request=httpx.Request('POST', WEBHOOK['discord_webhook_url']))

        send_webhook('error', 'Backup Failed', 'alpha', [{'name': 'Error', 'value': 'boom'}],
                     get_setting=settings_getter(WEBHOOK), timeout=3)

        args, kwargs = mock_post.call_args
        assert args[0] == WEBHOOK['discord_webhook_url']
        assert kwargs['timeout'] == 3
        embed = kwargs['json']['embeds'][0]
        assert embed['color'] == COLORS['error']
        assert embed['fields'][0]['value'] == 'boom'

    @patch('httpx.post')
    def test_never_raises(self, mock_post):
        mock_post.side_effect = httpx.ConnectError('refused')

        send_webhook('info', 'Backup Started', 'alpha', get_setting=settings_getter(WEBHOOK))

    @patch('httpx.post')
    def test_http_error_swallowed(self, mock_post):
        mock_post.return_value = httpx.Response(500, request=httpx.Request('POST', WEBHOOK['discord_webhook_url']))

        send_webhook('info', 'Backup Started', 'alpha', get_setting=settings_getter(WEBHOOK))

    def test_settings_failure_swallowed(self):
        def broken(key, default=None):
            raise RuntimeError('database unavailable')

        send_webhook('info', 'Backup Started', 'alpha', get_setting=broken)
