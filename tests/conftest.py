"""Pytest configuration and fixtures.

The app reads its configuration at import time, so the environment is set
before `app` is imported. Every test gets a fresh in-memory SQLite schema.
"""

import base64
import hashlib
import hmac
import json
import os
import time

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ["APP_ENV"] = "test"
os.environ.pop("SHOPIFY_APP_URL", None)
os.environ.pop("LOG_FILE", None)

import jwt
import pytest

from app import app as flask_app
from models import MetafieldDefinition, StoreToken, db
from shops import get_or_create_shop, shop_ids
from template_lookup import _self_healed_shops
from template_store import create_template

SHOP_DOMAIN = "test-shop.myshopify.com"


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.create_all()
        shop_ids.clear()
        _self_healed_shops.clear()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def shop(app):
    shop = get_or_create_shop(SHOP_DOMAIN)
    db.session.commit()
    return shop


@pytest.fixture
def installed_shop(shop):
    """Shop with a stored offline access token."""
    db.session.add(StoreToken(shop=SHOP_DOMAIN, access_token="shpat_test", scope="read_products"))
    db.session.commit()
    return shop


@pytest.fixture
def make_definition(shop):
    def factory(namespace="specs", key="material", name=None, owner_type="PRODUCT", type="single_line_text_field"):
        definition = MetafieldDefinition(
            shop_id=shop.id,
            namespace=namespace,
            key=key,
            name=name,
            owner_type=owner_type,
            type=type,
        )
        db.session.add(definition)
        db.session.commit()
        return definition

    return factory


@pytest.fixture
def make_template(shop, make_definition):
    """Create a one-section template through the template store."""
    default_definition = {}

    def factory(name="Spec sheet", definition=None, **fields):
        if definition is None:
            if "definition" not in default_definition:
                default_definition["definition"] = make_definition()
            definition = default_definition["definition"]
        data = {
            "name": name,
            "sections": [
                {"heading": "Details", "metafields": [{"metafieldDefinitionId": definition.id}]}
            ],
        }
        data.update(fields)
        return create_template(data, SHOP_DOMAIN)

    return factory


def session_token(shop_domain=SHOP_DOMAIN, secret="test-api-secret", audience="test-api-key", expires_in=60):
    now = int(time.time())
    payload = {
        "iss": f"https://{shop_domain}/admin",
        "dest": f"https://{shop_domain}",
        "aud": audience,
        "sub": "1",
        "iat": now,
        "nbf": now - 5,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers(shop):
    return {"Authorization": f"Bearer {session_token()}"}


def webhook_headers(topic, body, shop_domain=SHOP_DOMAIN, secret="test-api-secret"):
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return {
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop_domain,
        "X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode("utf-8"),
        "Content-Type": "application/json",
    }


def json_body(payload):
    return json.dumps(payload).encode("utf-8")
