import base64
import hashlib
import hmac
import logging
import os
import uuid
from functools import wraps
from urllib.parse import urlparse

import jwt
import requests
from dotenv import load_dotenv
from flask import Flask, g, jsonify, redirect, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from assignments import list_assignments, save_template_assignment
from catalog_sync import catalog_counts, sync_all
from errors import NotFoundError, ShopifyAPIError, ValidationError
from models import db
from perf import measure_time
from plans import PLANS, get_shop_plan, recommend_plan, select_plan, serialize_shop_plan
from shopify_api import (
    count_products,
    fetch_product_metafield_values,
    get_shop_app_url,
    register_webhooks,
    set_shop_app_url,
)
from shops import get_access_token_for_shop, require_shop, save_access_token
from template_lookup import rebuild_template_lookup
from template_store import (
    as_bool,
    build_template_payload,
    create_template,
    delete_template,
    duplicate_template,
    get_template,
    get_template_for_target,
    list_metafield_definitions,
    list_templates,
    search_collections,
    search_products,
    serialize_template,
    toggle_template_active,
    update_template,
)
from webhook_logger import get_webhook_stats
from webhooks import process_webhook

# Load environment variables
load_dotenv()

# Configure logging
log_handlers = [logging.StreamHandler()]
if os.getenv("LOG_FILE"):
    log_handlers.append(logging.FileHandler(os.getenv("LOG_FILE")))
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=log_handlers
)

app = Flask(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///specsheet.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
db.init_app(app)

# The storefront extension calls the public API from the shop's own domain
CORS(
    app,
    resources={
        r"/api/*": {"origins": "*"},
        r"/template": {"origins": "*"},
    },
    methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type"],
    send_wildcard=True,
)

# Shopify API credentials
SHOPIFY_API_KEY = os.getenv("SHOPIFY_API_KEY")
SHOPIFY_API_SECRET = os.getenv("SHOPIFY_API_SECRET")
REDIRECT_URI = os.getenv("REDIRECT_URI")
SCOPES = os.getenv("SHOPIFY_SCOPES", "read_products,read_metafields,write_metafields")
SHOPIFY_APP_URL = os.getenv("SHOPIFY_APP_URL")
APP_ENV = os.getenv("APP_ENV", "production")


# ---------------- AUTH HELPERS ----------------
def verify_hmac(hmac_value, raw_body):
    """Hex HMAC, as sent on the OAuth callback query string."""
    calculated = hmac.new(
        SHOPIFY_API_SECRET.encode("utf-8"),
        raw_body,
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(calculated, hmac_value or "")


def verify_webhook_hmac(hmac_header, raw_body):
    """Base64 HMAC, as sent in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(
        SHOPIFY_API_SECRET.encode("utf-8"),
        raw_body,
        hashlib.sha256
    ).digest()
    calculated = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(calculated, hmac_header or "")


def verify_id_token(id_token):
    return jwt.decode(
        id_token,
        SHOPIFY_API_SECRET,
        algorithms=["HS256"],
        audience=SHOPIFY_API_KEY,
        options={"verify_exp": True}
    )


def shop_from_session_token(payload):
    dest = payload.get("dest") or ""
    return urlparse(dest).netloc or dest or None


def shop_required(view):
    """Admin routes: identify the shop from the App Bridge session token."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing session token"}), 401
        try:
            payload = verify_id_token(auth_header[len("Bearer "):])
        except jwt.PyJWTError as e:
            app.logger.warning("Rejected session token: %s", e)
            return jsonify({"error": "Invalid session token"}), 401

        shop = shop_from_session_token(payload)
        if not shop:
            return jsonify({"error": "Invalid session token"}), 401
        g.shop = shop
        return view(*args, **kwargs)
    return wrapper


def _require_token(shop):
    token = get_access_token_for_shop(shop)
    if not token:
        raise NotFoundError("Shop is not installed")
    return token


# ---------------- ERRORS ----------------
@app.errorhandler(ValidationError)
def handle_validation_error(e):
    body = {"error": e.message}
    body.update(e.details)
    return jsonify(body), 400


@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({"error": e.message}), 404


@app.errorhandler(ShopifyAPIError)
def handle_shopify_error(e):
    app.logger.error("Shopify API error: %s", e.message)
    return jsonify({"error": e.message}), 502


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500


# ---------------- OAUTH ----------------
@app.route("/auth")
def authenticate():
    shop = request.args.get("shop")
    if not shop:
        return jsonify({"error": "Missing shop parameter"}), 400

    auth_url = (
        f"https://{shop}/admin/oauth/authorize?"
        f"client_id={SHOPIFY_API_KEY}&"
        f"scope={SCOPES}&"
        f"redirect_uri={REDIRECT_URI}&"
        f"state={uuid.uuid4().hex}"
    )
    return redirect(auth_url)


@app.route("/auth/callback")
def auth_callback():
    shop = request.args.get("shop")
    code = request.args.get("code")

    if not shop or not code:
        return jsonify({"error": "Invalid request"}), 400

    params = {k: v for k, v in request.args.items() if k != "hmac"}
    # Shopify signs the decoded pairs, sorted and joined with "&"
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items())).encode("utf-8")
    if not verify_hmac(request.args.get("hmac"), message):
        app.logger.warning("OAuth callback for %s failed HMAC verification", shop)
        return jsonify({"error": "HMAC verification failed"}), 401

    token_url = f"https://{shop}/admin/oauth/access_token"
    payload = {
        "client_id": SHOPIFY_API_KEY,
        "client_secret": SHOPIFY_API_SECRET,
        "code": code,
    }
    response = requests.post(token_url, json=payload, timeout=30)

    if response.status_code != 200:
        return jsonify({"error": "Error retrieving access token"}), 400

    body = response.json()
    access_token = body.get("access_token")
    save_access_token(shop, access_token, body.get("scope"))
    app.logger.info("Stored access token for %s", shop)

    failed = []
    if SHOPIFY_APP_URL:
        failed = register_webhooks(shop, access_token, SHOPIFY_APP_URL)

    return jsonify(
        {
            "message": "Authorization successful",
            "shop": shop,
            "failedWebhooks": failed,
        }
    )


@app.route("/init-db", methods=["GET"])
def init_db():
    """Create all database tables."""
    try:
        db.create_all()
        return jsonify({"message": "Database initialized successfully"}), 200
    except Exception as e:
        app.logger.exception("Database initialization failed")
        return jsonify({"error": str(e)}), 500


# ---------------- PUBLIC (STOREFRONT) ----------------
@app.route("/template", methods=["GET", "OPTIONS"])
@app.route("/api/template", methods=["GET", "OPTIONS"])
def public_template():
    if request.method == "OPTIONS":
        return "", 200

    shop = request.args.get("shop")
    if not shop:
        return jsonify({"error": "Missing shop parameter"}), 400
    product_id = request.args.get("productId")
    collection_id = request.args.get("collectionId")

    timings = {}
    try:
        with measure_time("total", timings):
            with measure_time("resolve", timings):
                template = get_template_for_target(shop, product_id, collection_id)
            with measure_time("definitions", timings):
                definitions = [d.to_dict() for d in list_metafield_definitions(shop)]
            body = {
                "template": build_template_payload(template) if template is not None else None,
                "allMetafieldDefinitions": definitions,
            }
    except Exception:
        app.logger.exception(
            "Error resolving template for %s (product=%s, collection=%s)", shop, product_id, collection_id
        )
        return jsonify({"error": "Internal server error"}), 500

    if APP_ENV == "development":
        body["_perf"] = timings
    return jsonify(body)


@app.route("/api/metafields", methods=["GET", "OPTIONS"])
def public_metafields():
    if request.method == "OPTIONS":
        return "", 200

    shop = request.args.get("shop")
    product_id = request.args.get("productId")
    if not shop or not product_id:
        return jsonify({"error": "Missing shop or productId parameter"}), 400

    token = get_access_token_for_shop(shop)
    if not token:
        return jsonify({"error": "Shop is not installed"}), 404

    try:
        metafields = fetch_product_metafield_values(shop, token, product_id, request.args.get("variantId"))
    except ShopifyAPIError as e:
        app.logger.error("Error fetching metafields for %s/%s: %s", shop, product_id, e.message)
        return jsonify({"error": "Internal server error"}), 500

    if metafields is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"metafields": metafields})


@app.route("/api/app-url", methods=["GET", "OPTIONS"])
def public_app_url():
    if request.method == "OPTIONS":
        return "", 200
    return jsonify({"appUrl": SHOPIFY_APP_URL or request.host_url.rstrip("/")})


# ---------------- ADMIN: TEMPLATES ----------------
@app.route("/app/templates", methods=["GET"])
@shop_required
def admin_list_templates():
    return jsonify({"templates": [serialize_template(t) for t in list_templates(g.shop)]})


@app.route("/app/templates", methods=["POST"])
@shop_required
def admin_create_template():
    template = create_template(request.get_json(silent=True) or {}, g.shop)
    return jsonify({"success": True, "template": serialize_template(template)}), 201


@app.route("/app/templates/<int:template_id>", methods=["GET"])
@shop_required
def admin_get_template(template_id):
    template = get_template(template_id, g.shop)
    if template is None:
        raise NotFoundError("Template not found")
    return jsonify({"template": serialize_template(template)})


@app.route("/app/templates/<int:template_id>", methods=["PUT"])
@shop_required
def admin_update_template(template_id):
    template = update_template(template_id, request.get_json(silent=True) or {}, g.shop)
    return jsonify({"success": True, "template": serialize_template(template)})


@app.route("/app/templates/<int:template_id>", methods=["DELETE"])
@shop_required
def admin_delete_template(template_id):
    delete_template(template_id, g.shop)
    return jsonify({"success": True})


@app.route("/app/templates/<int:template_id>/duplicate", methods=["POST"])
@shop_required
def admin_duplicate_template(template_id):
    template = duplicate_template(template_id, g.shop)
    return jsonify({"success": True, "template": serialize_template(template)}), 201


@app.route("/app/templates/<int:template_id>/toggle", methods=["POST"])
@shop_required
def admin_toggle_template(template_id):
    template = toggle_template_active(template_id, g.shop)
    return jsonify({"success": True, "isActive": template.is_active})


@app.route("/app/templates/<int:template_id>/assignment", methods=["POST"])
@shop_required
def admin_save_assignment(template_id):
    data = request.get_json(silent=True) or {}
    result = save_template_assignment(
        template_id,
        data.get("assignmentType"),
        data.get("targetIds"),
        g.shop,
        is_excluded=as_bool(data.get("isExcluded")),
    )
    return jsonify(result)


@app.route("/app/assignments", methods=["GET"])
@shop_required
def admin_list_assignments():
    return jsonify({"assignments": list_assignments(g.shop)})


# ---------------- ADMIN: CATALOG ----------------
@app.route("/app/products", methods=["GET"])
@shop_required
def admin_products():
    return jsonify({"products": search_products(g.shop, request.args.get("search", "").strip())})


@app.route("/app/collections", methods=["GET"])
@shop_required
def admin_collections():
    return jsonify({"collections": search_collections(g.shop, request.args.get("search", "").strip())})


@app.route("/app/metafield-definitions", methods=["GET"])
@shop_required
def admin_metafield_definitions():
    return jsonify({"metafieldDefinitions": [d.to_dict() for d in list_metafield_definitions(g.shop)]})


@app.route("/app/sync", methods=["GET"])
@shop_required
def admin_sync_status():
    token = _require_token(g.shop)
    try:
        app_url = get_shop_app_url(g.shop, token)
    except ShopifyAPIError as e:
        app.logger.warning("Could not read app URL for %s: %s", g.shop, e.message)
        app_url = None
    return jsonify({"counts": catalog_counts(g.shop), "appUrl": app_url})


@app.route("/app/sync", methods=["POST"])
@shop_required
def admin_sync():
    token = _require_token(g.shop)
    data = request.get_json(silent=True) or {}
    action = data.get("actionType", "sync")

    if action == "setAppUrl":
        app_url = data.get("appUrl") or SHOPIFY_APP_URL or request.host_url.rstrip("/")
        metafield = set_shop_app_url(g.shop, token, app_url)
        return jsonify({"success": True, "appUrl": metafield.get("value")})
    if action != "sync":
        raise ValidationError(f"Unknown action: {action}")

    results = sync_all(g.shop, token)
    return jsonify({"success": not results["errors"], "results": results})


@app.route("/app/lookup/rebuild", methods=["POST"])
@shop_required
def admin_rebuild_lookup():
    shop = require_shop(g.shop)
    try:
        rows = rebuild_template_lookup(shop.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({"success": True, "rows": rows})


# ---------------- ADMIN: OPERATIONS ----------------
@app.route("/app/webhooks", methods=["GET"])
@shop_required
def admin_webhook_stats():
    limit = request.args.get("limit", 100, type=int)
    return jsonify(get_webhook_stats(g.shop, limit=limit))


@app.route("/app/plans", methods=["GET"])
@shop_required
def admin_plans():
    products_count = count_products(g.shop, _require_token(g.shop))
    return jsonify(
        {
            "plans": PLANS,
            "productsCount": products_count,
            "recommended": recommend_plan(products_count)["key"],
            "current": serialize_shop_plan(get_shop_plan(g.shop)),
        }
    )


@app.route("/app/plans", methods=["POST"])
@shop_required
def admin_select_plan():
    data = request.get_json(silent=True) or {}
    products_count = count_products(g.shop, _require_token(g.shop))
    shop_plan = select_plan(g.shop, data.get("planKey"), products_count)
    return jsonify({"success": True, "plan": serialize_shop_plan(shop_plan)})


# ---------------- WEBHOOKS ----------------
@app.route("/webhooks/<path:topic>", methods=["POST"])
def receive_webhook(topic):
    raw_body = request.get_data()
    if not verify_webhook_hmac(request.headers.get("X-Shopify-Hmac-Sha256"), raw_body):
        app.logger.warning("Webhook %s rejected: bad HMAC", topic)
        return jsonify({"error": "Unauthorized"}), 401

    topic = request.headers.get("X-Shopify-Topic") or topic
    shop = request.headers.get("X-Shopify-Shop-Domain")
    if not shop:
        return jsonify({"error": "Missing shop domain"}), 400

    status, _ = process_webhook(topic, shop, request.get_json(silent=True) or {})
    return jsonify({"status": status}), 200


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=APP_ENV == "development")
