"""
Unit tests for workload state coordination (volvault/backup/workload.py).
"""

from unittest.mock import patch

import httpx
import pytest

from volvault.backup.workload import WorkloadCoordinator, is_workload_id


SERVER_ID = '1a7ce997-259b-452e-8b4e-cecc464142ca'

CONFIGURED = {
    'ptero_url': 'https://panel.example.com/',
    'ptero_key': 'ptlc_secret',
}


def settings_getter(values):
    return lambda key, default=None: values.get(key, default)


def response(status, json=None, method='GET'):
    return httpx.Response(status, json=json, request=httpx.Request(method, 'https://panel.example.com'))


class TestIsWorkloadId:

    @pytest.mark.parametrize('name', [
        SERVER_ID,
        SERVER_ID.upper(),
    ])
    def test_uuid_names(self, name):
        assert is_workload_id(name)

    @pytest.mark.parametrize('name', [
        'vol1',
        '',
        None,
        SERVER_ID + '-extra',
        '1a7ce997259b452e8b4ececc464142ca',
    ])
    def test_other_names(self, name):
        assert not is_workload_id(name)


class TestGetState:

    @patch('httpx.get')
    def test_returns_current_state(self, mock_get):
        mock_get.return_value = response(200, {'attributes': {'current_state': 'running'}})
        coordinator = WorkloadCoordinator(settings_getter(CONFIGURED), timeout=5)

        assert coordinator.get_state(SERVER_ID) == 'running'

        args, kwargs = mock_get.call_args
        assert args[0] == f'https://panel.example.com/api/client/servers/{SERVER_ID}/resources'
        assert kwargs['headers']['Authorization'] == 'Bearer ptlc_secret'
        assert kwargs['timeout'] == 5

    @patch('httpx.get')
    def test_unconfigured_returns_none_without_request(self, mock_get):
        coordinator = WorkloadCoordinator(settings_getter({'ptero_url': 'https://panel'}))

        assert coordinator.get_state(SERVER_ID) is None
        mock_get.assert_not_called()

    @patch('httpx.get')
    def test_not_found(self, mock_get):
        mock_get.return_value = response(404)

        assert WorkloadCoordinator(settings_getter(CONFIGURED)).get_state(SERVER_ID) is None

    @patch('httpx.get')
    def test_server_error(self, mock_get):
        mock_get.return_value = response(500)

        assert WorkloadCoordinator(settings_getter(CONFIGURED)).get_state(SERVER_ID) is None

    @patch('httpx.get')
    def test_network_error(self, mock_get):
        mock_get.side_effect = httpx.ConnectError('refused')

        assert WorkloadCoordinator(settings_getter(CONFIGURED)).get_state(SERVER_ID) is None

    @patch('httpx.get')
    def test_malformed_body(self, mock_get):
        mock_get.return_value = response(200, {'unexpected': True})

        assert WorkloadCoordinator(settings_getter(CONFIGURED)).get_state(SERVER_ID) is None


class TestSetState:

    @patch('httpx.post')
    def test_accepted(self, mock_post):
        mock_post.return_value = response(204, method='POST')
        coordinator = WorkloadCoordinator(settings_getter(CONFIGURED))

        assert coordinator.set_state(SERVER_ID, 'stop') is True

        args, kwargs = mock_post.call_args
        assert args[0] == f'https://panel.example.com/api/client/servers/{SERVER_ID}/power'
        assert kwargs['json'] == {'signal': 'stop'}

    @patch('httpx.post')
    def test_rejected(self, mock_post):
        mock_post.return_value = response(409, method='POST')

        assert WorkloadCoordinator(settings_getter(CONFIGURED)).set_state(SERVER_ID, 'start') is False

    @patch('httpx.post')
    def test_unconfigured(self, mock_post):
        assert WorkloadCoordinator(settings_getter({})).set_state(SERVER_ID, 'start') is False
        mock_post.assert_not_called()

    def test_invalid_signal(self):
        with pytest.raises(ValueError, match='Invalid power signal'):
            WorkloadCoordinator(settings_getter(CONFIGURED)).set_state(SERVER_ID, 'pause')
