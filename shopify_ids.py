import re

# gid://shopify/Product/123456789, gid://shopify/Collection/42
RESOURCE_URI = re.compile(r"[a-z][a-z0-9+.-]*://[^/\s]+/(?:Product|Collection)/(\d+)", re.IGNORECASE)


def normalize_shopify_id(value):
    """
    Canonical comparison key for product/collection ids.

    Accepts a bare numeric id or a resource URI and returns the digits as a
    string. Anything else is returned as a string unchanged; empty input gives None.
    """
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    match = RESOURCE_URI.search(text)
    if match:
        return match.group(1)
    return text


def to_gid(resource, value):
    """Build the Admin API global id for `resource` ("Product", "ProductVariant", ...)."""
    text = str(value).strip()
    if text.startswith("gid://"):
        return text
    return f"gid://shopify/{resource}/{text}"
