"""
Customer notifications after scheduling changes.

Fire-and-forget: a webhook is POSTed when NOTIFICATION_WEBHOOK_URL is set.
Any failure is logged and swallowed so it can never undo a reschedule or a
cancellation that has already been committed.
"""

import logging
import time

import httpx

from slot_scheduler.core import config

logger = logging.getLogger(__name__)

ORDER_RESCHEDULED = 'order_rescheduled'
ORDER_CANCELLED = 'order_cancelled'


def notify_customer(event_type: str, payload: dict) -> bool:
    """Send a notification; returns whether the webhook accepted it."""
    url = config.NOTIFICATION_WEBHOOK_URL
    if not url:
        logger.debug('NOTIFICATION_WEBHOOK_URL not set; skipping %s', event_type)
        return False

    body = {'event': event_type, **payload, 'ts': int(time.time())}
    try:
        with httpx.Client(timeout=config.NOTIFICATION_TIMEOUT_SECONDS) as client:
            response = client.post(url, json=body)
        if response.status_code >= 400:
            logger.warning('Notification webhook returned %s for %s: %s', response.status_code, event_type, response.text)
            return False
        logger.info('Notification sent: %s order=%s', event_type, payload.get('order_id'))
        return True
    except Exception as e:
        logger.warning('Notification %s failed: %s', event_type, e, exc_info=True)
        return False
