"""Copies products, collections and metafield definitions from Shopify into the local mirror."""

import logging

from errors import ShopifyAPIError
from models import OWNER_PRODUCT, OWNER_VARIANT, Collection, MetafieldDefinition, Product, db
from shopify_api import PAGE_SIZE, graphql_request, paginate
from shopify_ids import normalize_shopify_id, to_gid
from shops import get_or_create_shop, get_shop

logger = logging.getLogger(__name__)

PRODUCTS_QUERY = """
query getProducts($cursor: String) {
  products(first: %d, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    nodes { id title handle }
  }
}
""" % PAGE_SIZE

COLLECTIONS_QUERY = """
query getCollections($cursor: String) {
  collections(first: %d, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    nodes { id title handle }
  }
}
""" % PAGE_SIZE

COLLECTION_QUERY = """
query getCollection($id: ID!) {
  collection(id: $id) { id title handle }
}
"""

METAFIELD_DEFINITIONS_QUERY = """
query getMetafieldDefinitions($cursor: String, $ownerType: MetafieldOwnerType!) {
  metafieldDefinitions(first: %d, after: $cursor, ownerType: $ownerType) {
    pageInfo { hasNextPage endCursor }
    nodes {
      id
      namespace
      key
      name
      type { name }
      ownerType
    }
  }
}
""" % PAGE_SIZE

# Admin API owner type -> owner type stored locally
OWNER_TYPES = {
    "PRODUCT": OWNER_PRODUCT,
    "PRODUCTVARIANT": OWNER_VARIANT,
}


def _upsert_catalog_row(model, shop_id, node):
    shopify_id = normalize_shopify_id(node["id"])
    row = model.query.filter_by(shop_id=shop_id, shopify_id=shopify_id).first()
    if row is None:
        row = model(shop_id=shop_id, shopify_id=shopify_id)
        db.session.add(row)
    row.title = node.get("title") or ""
    row.handle = node.get("handle") or None
    return row


def _sync_connection(model, query, connection, shop_domain, access_token):
    shop = get_or_create_shop(shop_domain)
    total = 0
    try:
        for node in paginate(shop_domain, access_token, query, connection):
            _upsert_catalog_row(model, shop.id, node)
            total += 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Synced %d %s for %s", total, connection, shop_domain)
    return {"totalSynced": total, "shopId": shop.id}


def sync_products(shop_domain, access_token):
    return _sync_connection(Product, PRODUCTS_QUERY, "products", shop_domain, access_token)


def sync_collections(shop_domain, access_token):
    return _sync_connection(Collection, COLLECTIONS_QUERY, "collections", shop_domain, access_token)


def sync_metafield_definitions(shop_domain, access_token):
    """Product and variant definitions; PRODUCT_VARIANT is stored as VARIANT."""
    shop = get_or_create_shop(shop_domain)
    total = 0
    try:
        for api_owner_type, owner_type in OWNER_TYPES.items():
            nodes = paginate(
                shop_domain,
                access_token,
                METAFIELD_DEFINITIONS_QUERY,
                "metafieldDefinitions",
                {"ownerType": api_owner_type},
            )
            for node in nodes:
                definition = MetafieldDefinition.query.filter_by(
                    shop_id=shop.id,
                    namespace=node["namespace"],
                    key=node["key"],
                    owner_type=owner_type,
                ).first()
                if definition is None:
                    definition = MetafieldDefinition(
                        shop_id=shop.id,
                        namespace=node["namespace"],
                        key=node["key"],
                        owner_type=owner_type,
                    )
                    db.session.add(definition)
                definition.name = node.get("name") or None
                definition.type = (node.get("type") or {}).get("name") or "unknown"
                total += 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Synced %d metafield definitions for %s", total, shop_domain)
    return {"totalSynced": total, "shopId": shop.id}


def sync_all(shop_domain, access_token):
    """Run every sync stage; a failing stage is reported, not fatal."""
    results = {"products": None, "collections": None, "metafieldDefinitions": None, "errors": []}
    stages = (
        ("products", sync_products),
        ("collections", sync_collections),
        ("metafieldDefinitions", sync_metafield_definitions),
    )
    for name, stage in stages:
        try:
            results[name] = stage(shop_domain, access_token)
        except Exception as e:
            logger.exception("Sync of %s failed for %s", name, shop_domain)
            results["errors"].append({"type": name, "error": str(e)})
    return results


def sync_single_collection(shop_domain, access_token, collection_id):
    shop = get_or_create_shop(shop_domain)
    data = graphql_request(
        shop_domain, access_token, COLLECTION_QUERY, {"id": to_gid("Collection", collection_id)}
    )
    node = data.get("collection")
    if not node:
        raise ShopifyAPIError(f"Collection {collection_id} not found")
    try:
        row = _upsert_catalog_row(Collection, shop.id, node)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return row


def _delete_catalog_row(model, shop_domain, shopify_id):
    shop = get_shop(shop_domain)
    normalized = normalize_shopify_id(shopify_id)
    if shop is None or not normalized:
        return 0
    deleted = model.query.filter_by(shop_id=shop.id, shopify_id=normalized).delete()
    db.session.commit()
    return deleted


def delete_product(shop_domain, product_id):
    return _delete_catalog_row(Product, shop_domain, product_id)


def delete_collection(shop_domain, collection_id):
    return _delete_catalog_row(Collection, shop_domain, collection_id)


def catalog_counts(shop_domain):
    shop = get_shop(shop_domain)
    if shop is None:
        return None
    return {
        "products": Product.query.filter_by(shop_id=shop.id).count(),
        "collections": Collection.query.filter_by(shop_id=shop.id).count(),
        "metafieldDefinitions": MetafieldDefinition.query.filter_by(shop_id=shop.id).count(),
    }
