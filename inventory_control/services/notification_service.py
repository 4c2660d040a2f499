import logging

import httpx

from inventory_control.config import settings
from inventory_control.models.order import Order

logger = logging.getLogger(__name__)


def build_client() -> httpx.Client:
    return httpx.Client(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)


def _webhook_urls(order: Order | None = None) -> list[str]:
    urls: list[str] = []

    # Global webhook URLs
    if settings.WEBHOOK_URLS:
        urls.extend(u.strip() for u in settings.WEBHOOK_URLS.split(",") if u.strip())

    # Per-order owner URL
    if order is not None and order.webhook_url:
        urls.append(order.webhook_url)

    return urls


def send_notification(event: str, payload: dict, order: Order | None = None) -> list[dict]:
    """Post an event to every configured URL. Failures are logged and reported, never raised."""
    urls = _webhook_urls(order)
    if not urls:
        return []

    body = {"event": event, **payload}
    results = []

    with build_client() as client:
        for url in urls:
            try:
                resp = client.post(url, json=body)
                results.append({"url": url, "status": resp.status_code, "success": resp.is_success})
                if not resp.is_success:
                    logger.warning("Notification %s to %s returned %s", event, url, resp.status_code)
            except httpx.HTTPError as e:
                logger.error(f"Notification {event} failed for {url}: {e}")
                results.append({"url": url, "status": 0, "success": False, "error": str(e)})

    return results


def notify_force_release(order: Order | None, reservation_payload: dict) -> list[dict]:
    """Tell the order owner (and global listeners) that a hold on their order was removed."""
    payload = dict(reservation_payload)
    if order is not None:
        payload["order_number"] = order.order_number
        payload["customer_email"] = order.customer_email
    return send_notification("reservation.force_released", payload, order)
