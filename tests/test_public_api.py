"""Storefront-facing endpoints: template resolution, live metafields, CORS."""

from unittest.mock import patch

import pytest

from assignments import save_template_assignment
from conftest import SHOP_DOMAIN
from errors import ShopifyAPIError


@pytest.fixture
def assigned_template(shop, make_template):
    template = make_template("Specs")
    save_template_assignment(template.id, "PRODUCT", ["111"], SHOP_DOMAIN)
    return template


class TestTemplateEndpoint:
    def test_resolves_template(self, client, assigned_template) -> None:
        resp = client.get(f"/api/template?shop={SHOP_DOMAIN}&productId=gid://shopify/Product/111")

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["template"]["id"] == assigned_template.id
        assert body["template"]["sections"][0]["heading"] == "Details"
        assert len(body["allMetafieldDefinitions"]) == 1
        assert "_perf" not in body

    def test_short_path(self, client, assigned_template) -> None:
        resp = client.get(f"/template?shop={SHOP_DOMAIN}&productId=111")

        assert resp.get_json()["template"]["id"] == assigned_template.id

    def test_unassigned_product_returns_null_template(self, client, assigned_template) -> None:
        resp = client.get(f"/api/template?shop={SHOP_DOMAIN}&productId=999")

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["template"] is None
        assert len(body["allMetafieldDefinitions"]) == 1

    def test_unknown_shop_returns_null_template(self, client, app) -> None:
        resp = client.get("/api/template?shop=nobody.myshopify.com&productId=1")

        assert resp.status_code == 200
        assert resp.get_json() == {"template": None, "allMetafieldDefinitions": []}

    def test_missing_shop(self, client, app) -> None:
        resp = client.get("/api/template?productId=1")

        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_internal_error(self, client, shop) -> None:
        with patch("app.get_template_for_target", side_effect=RuntimeError("boom")):
            resp = client.get(f"/api/template?shop={SHOP_DOMAIN}&productId=1")

        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Internal server error"}

    def test_perf_block_in_development(self, client, assigned_template, monkeypatch) -> None:
        monkeypatch.setattr("app.APP_ENV", "development")

        body = client.get(f"/api/template?shop={SHOP_DOMAIN}&productId=111").get_json()

        assert set(body["_perf"]) == {"resolve", "definitions", "total"}


class TestCors:
    def test_preflight(self, client, app) -> None:
        resp = client.options(
            "/api/template",
            headers={
                "Origin": "https://test-shop.myshopify.com",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

        assert resp.status_code == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert "GET" in resp.headers["Access-Control-Allow-Methods"]
        assert "content-type" in resp.headers["Access-Control-Allow-Headers"].lower()

    def test_simple_request_has_wildcard_origin(self, client, app) -> None:
        resp = client.get(
            "/api/template?shop=nobody.myshopify.com",
            headers={"Origin": "https://test-shop.myshopify.com"},
        )

        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    def test_admin_routes_have_no_cors(self, client, app) -> None:
        resp = client.get("/app/templates", headers={"Origin": "https://elsewhere.example"})

        assert "Access-Control-Allow-Origin" not in resp.headers


class TestMetafieldsEndpoint:
    def test_missing_parameters(self, client, app) -> None:
        assert client.get(f"/api/metafields?shop={SHOP_DOMAIN}").status_code == 400
        assert client.get("/api/metafields?productId=1").status_code == 400

    def test_shop_not_installed(self, client, shop) -> None:
        resp = client.get(f"/api/metafields?shop={SHOP_DOMAIN}&productId=1")

        assert resp.status_code == 404

    def test_returns_live_values(self, client, installed_shop) -> None:
        values = {"product": {"specs": {"material": "Wool"}}, "variants": {}}
        with patch("app.fetch_product_metafield_values", return_value=values) as fetch:
            resp = client.get(f"/api/metafields?shop={SHOP_DOMAIN}&productId=1")

        assert resp.status_code == 200
        assert resp.get_json() == {"metafields": values}
        fetch.assert_called_once_with(SHOP_DOMAIN, "shpat_test", "1", None)

    def test_shopify_failure(self, client, installed_shop) -> None:
        with patch("app.fetch_product_metafield_values", side_effect=ShopifyAPIError("down")):
            resp = client.get(f"/api/metafields?shop={SHOP_DOMAIN}&productId=1")

        assert resp.status_code == 500


def test_app_url_falls_back_to_host(client, app) -> None:
    resp = client.get("/api/app-url")

    assert resp.get_json() == {"appUrl": "http://localhost"}
