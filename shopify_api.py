import logging
import os

import requests

from errors import ShopifyAPIError
from shopify_ids import to_gid

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-10")
PAGE_SIZE = 250

WEBHOOK_TOPICS = {
    "PRODUCTS_CREATE": "products/create",
    "PRODUCTS_UPDATE": "products/update",
    "PRODUCTS_DELETE": "products/delete",
    "COLLECTIONS_CREATE": "collections/create",
    "COLLECTIONS_DELETE": "collections/delete",
    "APP_UNINSTALLED": "app/uninstalled",
    "APP_SCOPES_UPDATE": "app/scopes_update",
}


def graphql_request(shop, token, query, variables=None):
    """POST a query to the Admin GraphQL API and return the `data` object."""
    url = f"https://{shop}/admin/api/{SHOPIFY_API_VERSION}/graphql.json"
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Access-Token": token
    }
    payload = {"query": query}
    if variables:
        payload["variables"] = variables

    try:
        resp = requests.post(url, headers=headers, json=payload, timeout=30)
    except requests.exceptions.RequestException as e:
        logger.error("Request to %s failed: %s", shop, e)
        raise ShopifyAPIError(f"Request failed: {e}")

    if resp.status_code != 200:
        logger.error("GraphQL query failed with status %s: %s", resp.status_code, resp.text)
        raise ShopifyAPIError(f"GraphQL query failed with status {resp.status_code}")

    body = resp.json()
    if body.get("errors"):
        raise ShopifyAPIError(f"GraphQL errors: {body['errors']}", details={"errors": body["errors"]})
    return body.get("data") or {}


def paginate(shop, token, query, connection, variables=None):
    """Yield every node of a cursor-paginated connection."""
    cursor = None
    while True:
        page_vars = dict(variables or {})
        if cursor:
            page_vars["cursor"] = cursor
        data = graphql_request(shop, token, query, page_vars)[connection]
        for node in data["nodes"]:
            yield node
        if not data["pageInfo"]["hasNextPage"]:
            break
        cursor = data["pageInfo"]["endCursor"]


def register_webhooks(shop, token, app_url):
    """Subscribe the app to every topic it handles. Returns the topics that failed."""
    mutation = """
    mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
      webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
        webhookSubscription { id topic }
        userErrors { field message }
      }
    }
    """
    failed = []
    for topic, path in WEBHOOK_TOPICS.items():
        variables = {
            "topic": topic,
            "webhookSubscription": {
                "callbackUrl": f"{app_url.rstrip('/')}/webhooks/{path}",
                "format": "JSON"
            }
        }
        try:
            data = graphql_request(shop, token, mutation, variables)
        except ShopifyAPIError as e:
            logger.error("Error creating %s webhook for %s: %s", topic, shop, e.message)
            failed.append(topic)
            continue
        user_errors = (data.get("webhookSubscriptionCreate") or {}).get("userErrors") or []
        if user_errors:
            logger.warning("Webhook %s for %s rejected: %s", topic, shop, user_errors)
            failed.append(topic)
    return failed


def count_products(shop, token):
    data = graphql_request(shop, token, "query { productsCount { count } }")
    return (data.get("productsCount") or {}).get("count") or 0


def fetch_product_metafield_values(shop, token, product_id, variant_id=None):
    """
    Live metafield values of a product and its variants, grouped as
    {"product": {namespace: {key: value}}, "variants": {variant_id: {...}}}.
    """
    values_fragment = """
      metafields(first: 250) {
        nodes { namespace key value type }
      }
    """
    if variant_id:
        query = """
        query getVariantMetafields($productId: ID!, $variantId: ID!) {
          product(id: $productId) {
            id
            %s
          }
          productVariant(id: $variantId) {
            id
            %s
          }
        }
        """ % (values_fragment, values_fragment)
        variables = {
            "productId": to_gid("Product", product_id),
            "variantId": to_gid("ProductVariant", variant_id),
        }
    else:
        query = """
        query getProductMetafields($productId: ID!) {
          product(id: $productId) {
            id
            %s
            variants(first: 250) {
              nodes {
                id
                %s
              }
            }
          }
        }
        """ % (values_fragment, values_fragment)
        variables = {"productId": to_gid("Product", product_id)}

    data = graphql_request(shop, token, query, variables)
    product = data.get("product")
    if not product:
        return None

    def grouped(owner):
        result = {}
        for mf in (owner.get("metafields") or {}).get("nodes", []):
            result.setdefault(mf["namespace"], {})[mf["key"]] = mf["value"]
        return result

    metafields = {"product": grouped(product), "variants": {}}
    if variant_id:
        variant = data.get("productVariant")
        if variant:
            metafields["variants"][str(variant_id).split("/")[-1]] = grouped(variant)
    else:
        for variant in (product.get("variants") or {}).get("nodes", []):
            metafields["variants"][variant["id"].split("/")[-1]] = grouped(variant)
    return metafields


def get_shop_app_url(shop, token):
    data = graphql_request(
        shop, token, 'query { shop { metafield(namespace: "custom", key: "app_url") { id value } } }'
    )
    metafield = (data.get("shop") or {}).get("metafield")
    return metafield["value"] if metafield else None


def set_shop_app_url(shop, token, app_url):
    """Store the app URL in the shop metafield the theme extension reads (custom.app_url)."""
    shop_gid = graphql_request(shop, token, "query { shop { id } }")["shop"]["id"]
    mutation = """
    mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
      metafieldsSet(metafields: $metafields) {
        metafields { id namespace key value }
        userErrors { field message }
      }
    }
    """
    variables = {
        "metafields": [
            {
                "ownerId": shop_gid,
                "namespace": "custom",
                "key": "app_url",
                "type": "single_line_text_field",
                "value": app_url,
            }
        ]
    }
    result = graphql_request(shop, token, mutation, variables)["metafieldsSet"]
    if result.get("userErrors"):
        raise ShopifyAPIError(f"User errors: {result['userErrors']}")
    return result["metafields"][0]
