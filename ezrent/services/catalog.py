"""
Item catalog client. The catalog service owns items; bookings take
availability, the current unit price and the listing owner from it.
"""
import logging
from dataclasses import dataclass

import httpx

from ezrent.config import get_settings
from ezrent.services.errors import CatalogUnavailable, ItemUnavailable
from ezrent.services.money import Money

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: str
    available: bool
    price_per_unit: Money
    owner_id: str
    owner_email: str | None = None


async def fetch_item(item_id: str) -> ItemSnapshot:
    url = f"{settings.catalog_base_url.rstrip('/')}/items/{item_id}"
    try:
        async with httpx.AsyncClient(timeout=settings.catalog_timeout_seconds) as client:
            resp = await client.get(url)
    except httpx.HTTPError as exc:
        logger.error("Catalog lookup failed item=%s: %s", item_id, exc)
        raise CatalogUnavailable("Item catalog is unreachable") from exc

    if resp.status_code == 404:
        raise ItemUnavailable(f"Item {item_id} does not exist")
    if resp.status_code >= 400:
        logger.error("Catalog error item=%s status=%s", item_id, resp.status_code)
        raise CatalogUnavailable(f"Item catalog answered {resp.status_code}")

    data = resp.json()
    # Ownership decides who may approve and who is paid out; never taken from the booking request
    owner_id = data.get("owner_id")
    if owner_id in (None, ""):
        logger.error("Catalog returned no owner for item=%s", item_id)
        raise CatalogUnavailable(f"Item catalog has no owner for item {item_id}")

    return ItemSnapshot(
        item_id=item_id,
        available=bool(data.get("available", False)),
        price_per_unit=Money.from_major(str(data["price_per_unit"])),
        owner_id=str(owner_id),
        owner_email=data.get("owner_email") or None,
    )
