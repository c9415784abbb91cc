"""
Update notifications: ntfy.sh and generic outgoing webhook.

Failures are always logged as warnings and never re-raised so that a broken
notification channel cannot interrupt the update cycle.
"""

import json
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

EVENT_UPDATED = 'container_updated'
EVENT_SELF_UPDATE = 'self_update_started'


def build_payload(event: str, container: str, image: str,
                  old_image_id: str = '', new_container_id: str = '') -> Dict[str, Any]:
    """Return the standard dict passed to every sender."""
    return {
        'event': event,
        'container': container,
        'image': image,
        'old_image_id': old_image_id,
        'new_container_id': new_container_id,
    }


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    container = payload['container']
    if payload['event'] == EVENT_SELF_UPDATE:
        title = f"isengard: updating itself ({container})"
    else:
        title = f"isengard: {container} updated"
    message = f"{container} now runs {payload['image']}"
    if payload.get('new_container_id'):
        message += f" ({payload['new_container_id'][:12]})"

    headers = {
        'Title': title,
        'Tags': 'package',
        'Content-Type': 'text/plain',
    }

    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                  headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("ntfy: notification sent for %s", container)
        return True
    except requests.RequestException as e:
        logger.warning("ntfy: failed to send notification: %s", e)
        return False


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST the raw payload as JSON to a webhook URL.

    Config keys:
        url      (required) Webhook URL
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    try:
        response = requests.post(url, data=json.dumps(payload).encode('utf-8'),
                                 headers={'Content-Type': 'application/json'},
                                 timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("webhook: notification sent for %s", payload['container'])
        return True
    except requests.RequestException as e:
        logger.warning("webhook: failed to send notification: %s", e)
        return False


def send_notifications(notif_cfg: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> None:
    """Dispatch a payload to all configured channels.

    Safe to call unconditionally: exits immediately when notif_cfg is None
    or empty. All sender errors are caught and logged, never re-raised.
    """
    if not notif_cfg:
        return

    ntfy_cfg = notif_cfg.get('ntfy')
    if ntfy_cfg and ntfy_cfg.get('url'):
        try:
            send_ntfy(ntfy_cfg, payload)
        except Exception as e:
            logger.warning("ntfy: unexpected error: %s", e)

    webhook_cfg = notif_cfg.get('webhook')
    if webhook_cfg and webhook_cfg.get('url'):
        try:
            send_webhook(webhook_cfg, payload)
        except Exception as e:
            logger.warning("webhook: unexpected error: %s", e)
