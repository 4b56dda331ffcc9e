"""
Best-effort Telegram alerts for scheduled sync failures.
"""

import logging

import httpx

from .config import AlertConfig

logger = logging.getLogger(__name__)


async def send_failure_alert(
    config: AlertConfig,
    message: str,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """
    Send a sync-failure alert to the configured Telegram chat.

    Returns True if the alert was delivered. Missing credentials and delivery
    errors are logged and reported as False; this never raises.
    """
    token = config.get_bot_token()
    chat_id = config.get_chat_id()
    if not token or not chat_id:
        logger.warning("Telegram credentials not configured, skipping failure alert")
        return False

    payload = {
        "chat_id": chat_id,
        "text": f"[ScheduledSync] Sync failed: {message}",
        "disable_web_page_preview": True,
    }
    url = f"{config.api_base.rstrip('/')}/bot{token}/sendMessage"

    client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
    try:
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return True
    except Exception as e:
        # The token is part of the URL, so only the exception type is logged.
        logger.error(f"Failed to send failure alert: {type(e).__name__}")
        return False
    finally:
        if http_client is None:
            await client.aclose()
