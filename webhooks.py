"""Handlers for the Shopify webhook topics the app subscribes to."""

import logging
import time

from catalog_sync import (
    delete_collection,
    delete_product,
    sync_all,
    sync_metafield_definitions,
    sync_single_collection,
)
from errors import ShopifyAPIError
from models import StoreToken, db
from shops import delete_shop_data, get_access_token_for_shop
from webhook_logger import log_webhook_event

logger = logging.getLogger(__name__)


def _token(shop_domain):
    token = get_access_token_for_shop(shop_domain)
    if not token:
        raise ShopifyAPIError(f"No access token stored for {shop_domain}")
    return token


def handle_product_changed(shop_domain, payload):
    # new metafields may have been defined alongside the product
    return sync_metafield_definitions(shop_domain, _token(shop_domain))


def handle_product_deleted(shop_domain, payload):
    deleted = delete_product(shop_domain, payload.get("id"))
    sync_metafield_definitions(shop_domain, _token(shop_domain))
    return {"deleted": deleted}


def handle_collection_created(shop_domain, payload):
    collection = sync_single_collection(shop_domain, _token(shop_domain), payload.get("id"))
    return {"collectionId": collection.shopify_id}


def handle_collection_deleted(shop_domain, payload):
    return {"deleted": delete_collection(shop_domain, payload.get("id"))}


def handle_app_uninstalled(shop_domain, payload):
    return {"deleted": delete_shop_data(shop_domain)}


def handle_scopes_update(shop_domain, payload):
    scopes = payload.get("current") or []
    store = StoreToken.query.filter_by(shop=shop_domain).first()
    if store is not None:
        store.scope = ",".join(scopes) if isinstance(scopes, list) else str(scopes)
        db.session.commit()
    return sync_all(shop_domain, _token(shop_domain))


HANDLERS = {
    "products/create": handle_product_changed,
    "products/update": handle_product_changed,
    "products/delete": handle_product_deleted,
    "collections/create": handle_collection_created,
    "collections/delete": handle_collection_deleted,
    "app/uninstalled": handle_app_uninstalled,
    "app/scopes_update": handle_scopes_update,
}


def process_webhook(topic, shop_domain, payload):
    """
    Run the handler for a verified delivery and record the outcome.
    Returns (status, error message). Handler failures are logged, never raised:
    Shopify retries anything that is not answered with 200.
    """
    handler = HANDLERS.get(topic)
    if handler is None:
        logger.warning("Unhandled webhook topic %s from %s", topic, shop_domain)
        return "ignored", None

    start = time.perf_counter()
    status, error = "success", None
    try:
        handler(shop_domain, payload or {})
    except Exception as e:
        db.session.rollback()
        logger.exception("Webhook %s failed for %s", topic, shop_domain)
        status, error = "error", str(e)
    elapsed = int((time.perf_counter() - start) * 1000)

    log_webhook_event(shop_domain, topic, status, error_message=error, payload=payload, response_time=elapsed)
    logger.info("Webhook %s for %s: %s in %dms", topic, shop_domain, status, elapsed)
    return status, error
