"""OAuth install callback: query-string HMAC and token storage."""

import hashlib
import hmac
from unittest.mock import MagicMock, patch

from conftest import SHOP_DOMAIN
from models import StoreToken


def signed_query(params, secret="test-api-secret"):
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    signed = dict(params)
    signed["hmac"] = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return signed


def token_response():
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {"access_token": "shpat_new", "scope": "read_products"}
    return resp


class TestAuthCallback:
    def test_values_with_reserved_characters_verify(self, client, app) -> None:
        query = signed_query(
            {
                "code": "abc/123+x",
                "host": "YWRtaW4uc2hvcGlmeS5jb20vc3RvcmUvdGVzdA==",
                "shop": SHOP_DOMAIN,
                "state": "a b&c",
                "timestamp": "1700000000",
            }
        )

        with patch("app.requests.post", return_value=token_response()) as post:
            resp = client.get("/auth/callback", query_string=query)

        assert resp.status_code == 200
        assert resp.get_json()["shop"] == SHOP_DOMAIN
        assert post.call_args.kwargs["json"]["code"] == "abc/123+x"
        store = StoreToken.query.filter_by(shop=SHOP_DOMAIN).one()
        assert store.access_token == "shpat_new"
        assert store.scope == "read_products"

    def test_bad_hmac_rejected(self, client, app) -> None:
        query = signed_query({"code": "abc", "shop": SHOP_DOMAIN, "timestamp": "1"}, secret="other-secret")

        with patch("app.requests.post") as post:
            resp = client.get("/auth/callback", query_string=query)

        assert resp.status_code == 401
        post.assert_not_called()
        assert StoreToken.query.count() == 0

    def test_missing_code(self, client, app) -> None:
        assert client.get(f"/auth/callback?shop={SHOP_DOMAIN}").status_code == 400
