# Overview: Post-commit, best-effort push of stock levels to connected marketplace channels.

"""
Marketplace stock sync.

LIFECYCLE:
1. A ledger unit commits.
2. The service calls notify_stock_changed(product_ids), which enqueues the
   sync_products Celery task and returns immediately.
3. A worker runs the task in its own app context and session, reads the
   committed quantities and pushes them to every active channel that lists
   the product.

INVARIANTS:
- Nothing raised here reaches the caller of the ledger operation.
- One failing channel (or listing) never stops the others.
- Pushed quantity is max(0, quantity): marketplaces reject negative stock.
- Products with no listing on a channel are skipped for that channel.
- A lost or skipped task is harmless; the next change re-pushes current stock.
"""

from __future__ import annotations

from typing import Iterable

from flask import current_app

from ..errors import ExternalSyncError
from ..extensions import db
from ..models import MarketplaceChannel, MarketplaceListing, Product, StockRecord
from ..worker import celery
from .marketplace_clients import client_for_channel


def _channel_quantity(channel: MarketplaceChannel, product: Product) -> int:
    if channel.location_id is None:
        return int(product.stock_quantity)
    qty = (
        db.session.query(StockRecord.quantity)
        .filter_by(product_id=product.id, location_id=channel.location_id)
        .scalar()
    )
    return int(qty or 0)


@celery.task(name="marketplace.sync_products")
def sync_products(product_ids: Iterable[int], *, transport=None) -> dict:
    """
    Push current stock for the given products to every active channel.

    Enqueued with .delay(ids) after a ledger commit; called directly it runs
    in-process (CLI). Returns counts of pushed and failed listing updates.

    transport: optional httpx transport for the clients; defaults to
    app.extensions["marketplace_transport"] when set.
    """
    logger = current_app.logger
    if transport is None:
        transport = current_app.extensions.get("marketplace_transport")
    ids = sorted({int(pid) for pid in product_ids if pid is not None})
    summary = {"pushed": 0, "failed": 0}
    if not ids:
        return summary

    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}
    org_ids = {p.org_id for p in products.values()}
    if not org_ids:
        return summary

    channels = (
        db.session.query(MarketplaceChannel)
        .filter(MarketplaceChannel.org_id.in_(org_ids))
        .filter_by(active=True)
        .order_by(MarketplaceChannel.id.asc())
        .all()
    )
    for channel in channels:
        listings = (
            db.session.query(MarketplaceListing)
            .filter(MarketplaceListing.channel_id == channel.id, MarketplaceListing.product_id.in_(ids))
            .order_by(MarketplaceListing.id.asc())
            .all()
        )
        if not listings:
            continue

        try:
            client = client_for_channel(channel, current_app.config, transport=transport)
        except Exception:
            logger.exception("Could not build marketplace client for channel %s", channel.id)
            summary["failed"] += len(listings)
            continue

        with client:
            for listing in listings:
                product = products.get(listing.product_id)
                if product is None:
                    continue
                quantity = max(0, _channel_quantity(channel, product))
                try:
                    client.push_stock(listing.external_item_id, listing.external_variant_id, quantity)
                except ExternalSyncError as exc:
                    summary["failed"] += 1
                    logger.warning(
                        "Stock push failed: channel=%s platform=%s product=%s item=%s status=%s: %s",
                        channel.id, channel.platform.value, product.id, listing.external_item_id, exc.status, exc,
                    )
                except Exception:
                    summary["failed"] += 1
                    logger.exception(
                        "Unexpected error pushing stock: channel=%s product=%s", channel.id, product.id
                    )
                else:
                    summary["pushed"] += 1
                    logger.info(
                        "Stock pushed: channel=%s platform=%s product=%s item=%s quantity=%s",
                        channel.id, channel.platform.value, product.id, listing.external_item_id, quantity,
                    )
    return summary


def notify_stock_changed(product_ids: Iterable[int]) -> None:
    """Post-commit hook used by the ledger services. Never raises."""
    ids = sorted({int(pid) for pid in product_ids if pid is not None})
    if not ids or not current_app.config.get("MARKETPLACE_SYNC_ENABLED", True):
        return
    try:
        sync_products.delay(ids)
    except Exception:
        current_app.logger.exception("Could not schedule marketplace sync for products %s", ids)
