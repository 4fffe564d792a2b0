import logging

from errors import NotFoundError
from models import Shop, StoreToken, db

logger = logging.getLogger(__name__)


class ShopIdCache:
    """
    Process-local shop_domain -> shop id memo.

    Shop ids never change once a row exists, so entries are not refreshed on
    normal reads. Uninstall drops the row and a reinstall creates a new one
    with a new id. forget() only clears this process, so readers that find
    nothing under a cached id call refresh() to pick up the current row.
    """

    def __init__(self):
        self._ids = {}

    def get(self, shop_domain):
        if not shop_domain:
            return None
        shop_id = self._ids.get(shop_domain)
        if shop_id is None:
            shop = Shop.query.filter_by(shop_domain=shop_domain).with_entities(Shop.id).first()
            if shop is None:
                return None
            shop_id = shop.id
            self._ids[shop_domain] = shop_id
        return shop_id

    def forget(self, shop_domain):
        self._ids.pop(shop_domain, None)

    def refresh(self, shop_domain):
        """Drop the cached id and read it again. None when the shop is gone."""
        self.forget(shop_domain)
        return self.get(shop_domain)

    def clear(self):
        self._ids.clear()

    def __contains__(self, shop_domain):
        return shop_domain in self._ids


shop_ids = ShopIdCache()


def get_shop(shop_domain):
    return Shop.query.filter_by(shop_domain=shop_domain).first()


def require_shop(shop_domain):
    shop = get_shop(shop_domain) if shop_domain else None
    if shop is None:
        raise NotFoundError("Shop not found")
    return shop


def get_or_create_shop(shop_domain):
    """Return the shop row, creating it on first contact. Flushes, caller commits."""
    shop = get_shop(shop_domain)
    if shop is None:
        shop = Shop(shop_domain=shop_domain)
        db.session.add(shop)
        db.session.flush()
        logger.info("Registered shop %s (id=%s)", shop_domain, shop.id)
    return shop


def get_access_token_for_shop(shop):
    store = StoreToken.query.filter_by(shop=shop).first()
    return store.access_token if store else None


def save_access_token(shop, access_token, scope=None):
    store = StoreToken.query.filter_by(shop=shop).first()
    if store:
        store.access_token = access_token
        if scope is not None:
            store.scope = scope
    else:
        store = StoreToken(shop=shop, access_token=access_token, scope=scope)
        db.session.add(store)
    get_or_create_shop(shop)
    db.session.commit()
    return store


def delete_shop_data(shop_domain, cache=shop_ids):
    """Drop the token and every row owned by the shop (app uninstalled)."""
    StoreToken.query.filter_by(shop=shop_domain).delete()
    shop = get_shop(shop_domain)
    if shop is not None:
        db.session.delete(shop)
    db.session.commit()
    cache.forget(shop_domain)
    return shop is not None
