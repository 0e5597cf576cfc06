"""
Workload state coordination through the panel's client API.

Volumes whose directory name is a server UUID belong to a live game server.
Before copying such a volume the pipeline asks the panel to stop the server
and starts it again afterwards. Every call here is best-effort: missing
configuration or API failures yield None/False instead of raising.
"""

import logging
import re
from typing import Callable, Optional

import httpx


logger = logging.getLogger(__name__)

WORKLOAD_ID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)

POWER_SIGNALS = ('start', 'stop', 'restart', 'kill')

OFFLINE = 'offline'


def is_workload_id(volume_name: str) -> bool:
    """True if the volume name has the canonical UUID shape."""
    return bool(WORKLOAD_ID_PATTERN.match(volume_name or ''))


class WorkloadCoordinator:
    """
    Queries and toggles server power state.

    Base URL and API key are read through `get_setting` on every call so
    settings changes apply to the next run without a restart.
    """

    def __init__(self, get_setting: Callable[[str], Optional[str]], timeout: float = 15):
        self.get_setting = get_setting
        self.timeout = timeout

    def _get_config(self):
        url = self.get_setting('ptero_url')
        key = self.get_setting('ptero_key')
        if not url or not key:
            return None
        return url.rstrip('/'), key

    def _headers(self, key: str) -> dict:
        return {
            'Authorization': f'Bearer {key}',
            'Accept': 'application/json',
        }

    def get_state(self, workload_id: str) -> Optional[str]:
        """
        Current power state (running, offline, starting, stopping).

        Returns:
            State string, or None when unconfigured, not found or on API error
        """
        conf = self._get_config()
        if conf is None:
            return None
        base_url, key = conf

        try:
            response = httpx.get(
                f'{base_url}/api/client/servers/{workload_id}/resources',
                headers=self._headers(key),
                timeout=self.timeout
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()['attributes']['current_state']
        except httpx.HTTPError as e:
            logger.warning(f"Workload API error (status {workload_id}): {e}")
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected workload API response for {workload_id}: {e}")
            return None

    def set_state(self, workload_id: str, signal: str) -> bool:
        """
        Send a power signal.

        Returns:
            True if the panel accepted the request (not whether the
            transition has completed)
        """
        if signal not in POWER_SIGNALS:
            raise ValueError(f"Invalid power signal: {signal}. Valid options: {list(POWER_SIGNALS)}")

        conf = self._get_config()
        if conf is None:
            return False
        base_url, key = conf

        try:
            response = httpx.post(
                f'{base_url}/api/client/servers/{workload_id}/power',
                json={'signal': signal},
                headers=self._headers(key),
                timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Workload API error (power {signal} {workload_id}): {e}")
            return False
