"""
Webhook notifications (Discord embed format).

send_webhook never raises: it silently returns when no webhook URL is
configured and logs delivery failures.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx


logger = logging.getLogger(__name__)

COLORS = {
    'success': 0x22c55e,
    'error': 0xef4444,
    'warning': 0xf59e0b,
    'info': 0x3b82f6,
}

ICONS = {
    'success': '✅',
    'error': '❌',
    'warning': '⚠️',
    'info': 'ℹ️',
}


def build_embed(kind: str, title: str, description: str, fields: Optional[List[dict]] = None) -> dict:
    return {
        'title': f"{ICONS.get(kind, '')} {title}".strip(),
        'description': description,
        'color': COLORS.get(kind, COLORS['info']),
        'fields': fields or [],
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'footer': {'text': 'Volvault Backup System'},
        'author': {'name': 'Backup Notification'},
    }


def send_webhook(kind: str, title: str, description: str, fields: Optional[List[dict]] = None,
                 get_setting: Optional[Callable[[str], Optional[str]]] = None, timeout: float = 10):
    """
    Post a notification to the configured webhook.

    Args:
        kind: One of success, error, warning, info
        title: Embed title
        description: Embed body
        fields: List of {'name', 'value', 'inline'} dicts
        get_setting: Settings lookup (defaults to the record store)
        timeout: HTTP timeout in seconds
    """
    try:
        if get_setting is None:
            from volvault.store import get_setting
        webhook_url = get_setting('discord_webhook_url')
        if not webhook_url:
            return

        response = httpx.post(
            webhook_url,
            json={'embeds': [build_embed(kind, title, description, fields)]},
            timeout=timeout
        )
        response.raise_for_status()
        logger.debug(f"Webhook sent: {title}")
    except Exception as e:
        logger.error(f"Webhook failed: {e}")
