"""Template CRUD, input validation and the storefront payload."""

import pytest

from assignments import save_template_assignment
from conftest import SHOP_DOMAIN
from errors import NotFoundError, ValidationError
from models import MetafieldDefinition, Product, SpecificationTemplate, TemplateSection, db
from shops import ShopIdCache, delete_shop_data, get_or_create_shop
from template_lookup import get_template_id_for_target
from template_store import (
    DEFAULT_STYLING,
    as_bool,
    build_template_payload,
    create_template,
    delete_template,
    duplicate_template,
    get_template,
    get_template_for_target,
    list_metafield_definitions,
    list_templates,
    load_styling,
    search_products,
    toggle_template_active,
    update_template,
)


class TestAsBool:
    @pytest.mark.parametrize("value", [True, 1, "true", "True", "on", "1"])
    def test_truthy(self, value) -> None:
        assert as_bool(value) is True

    @pytest.mark.parametrize("value", [False, 0, None, "false", "", "off", "undefined"])
    def test_falsy(self, value) -> None:
        assert as_bool(value) is False


class TestCreateTemplate:
    def test_sections_and_slots_are_ordered(self, shop, make_definition) -> None:
        material = make_definition(key="material", name="Material")
        weight = make_definition(key="weight")
        template = create_template(
            {
                "name": "  Specs  ",
                "sections": [
                    {
                        "heading": "Build",
                        "metafields": [
                            {"metafieldDefinitionId": weight.id, "customName": "  "},
                            {"metafieldDefinitionId": str(material.id), "customName": " Fabric "},
                        ],
                    },
                    {"heading": "Empty", "metafields": []},
                    {"heading": "Second", "metafields": [{"metafieldDefinitionId": material.id}]},
                ],
            },
            SHOP_DOMAIN,
        )

        assert template.name == "Specs"
        assert template.is_active is True
        assert [s.heading for s in template.sections] == ["Build", "Second"]
        first, second = template.sections[0].metafields
        assert first.custom_name is None
        assert second.custom_name == "Fabric"
        assert [s.position for s in template.sections] == [0, 1]

    def test_empty_name_rejected(self, shop) -> None:
        with pytest.raises(ValidationError, match="Template name cannot be empty"):
            create_template({"name": "   ", "sections": []}, SHOP_DOMAIN)

    def test_empty_heading_rejected(self, shop, make_definition) -> None:
        definition = make_definition()
        data = {
            "name": "Specs",
            "sections": [
                {"heading": "Ok", "metafields": [{"metafieldDefinitionId": definition.id}]},
                {"heading": " ", "metafields": [{"metafieldDefinitionId": definition.id}]},
            ],
        }
        with pytest.raises(ValidationError, match="Section 2 title cannot be empty"):
            create_template(data, SHOP_DOMAIN)
        assert SpecificationTemplate.query.count() == 0

    def test_unknown_definition_rejected(self, shop) -> None:
        data = {"name": "Specs", "sections": [{"heading": "A", "metafields": [{"metafieldDefinitionId": 404}]}]}
        with pytest.raises(ValidationError, match="Unknown metafield definition"):
            create_template(data, SHOP_DOMAIN)

    def test_desktop_hide_wins_over_mobile_hide(self, shop, make_definition) -> None:
        definition = make_definition()
        template = create_template(
            {
                "name": "Specs",
                "sections": [
                    {
                        "heading": "A",
                        "metafields": [
                            {"metafieldDefinitionId": definition.id, "hideFromPC": "true", "hideFromMobile": True}
                        ],
                    }
                ],
            },
            SHOP_DOMAIN,
        )

        slot = template.sections[0].metafields[0]
        assert slot.hide_from_pc is True
        assert slot.hide_from_mobile is False

    def test_styling_merged_over_defaults(self, shop, make_template) -> None:
        template = make_template(styling={"textColor": "#333333"})

        styling = load_styling(template)
        assert styling["textColor"] == "#333333"
        assert styling["backgroundColor"] == DEFAULT_STYLING["backgroundColor"]

    def test_unknown_shop(self, app) -> None:
        with pytest.raises(NotFoundError):
            create_template({"name": "Specs"}, "missing.myshopify.com")


class TestUpdateTemplate:
    def test_replaces_sections(self, shop, make_template, make_definition) -> None:
        template = make_template("Specs")
        other = make_definition(key="color")

        updated = update_template(
            template.id,
            {"name": "Renamed", "sections": [{"heading": "New", "metafields": [{"metafieldDefinitionId": other.id}]}]},
            SHOP_DOMAIN,
        )

        assert updated.name == "Renamed"
        assert [s.heading for s in updated.sections] == ["New"]
        assert TemplateSection.query.count() == 1

    def test_deactivating_rebuilds_lookup(self, shop, make_template) -> None:
        template = make_template("Specs")
        save_template_assignment(template.id, "PRODUCT", ["1"], SHOP_DOMAIN)

        update_template(template.id, {"name": "Specs", "isActive": False}, SHOP_DOMAIN)

        assert get_template_id_for_target(shop.id, product_id="1") is None

    def test_foreign_template_not_found(self, shop, make_template) -> None:
        with pytest.raises(NotFoundError):
            update_template(12345, {"name": "x"}, SHOP_DOMAIN)


class TestTemplateLifecycle:
    def test_duplicate_is_inactive_and_unassigned(self, shop, make_template) -> None:
        template = make_template("Specs", isAccordion=True)
        save_template_assignment(template.id, "DEFAULT", [], SHOP_DOMAIN)

        copy = duplicate_template(template.id, SHOP_DOMAIN)

        assert copy.name == "Specs duplicate"
        assert copy.is_active is False
        assert copy.is_accordion is True
        assert copy.assignment is None
        assert len(copy.sections) == 1
        assert len(copy.sections[0].metafields) == 1

    def test_toggle_flips_activation(self, shop, make_template) -> None:
        template = make_template("Specs")
        save_template_assignment(template.id, "DEFAULT", [], SHOP_DOMAIN)

        assert toggle_template_active(template.id, SHOP_DOMAIN).is_active is False
        assert get_template_id_for_target(shop.id) is None
        assert toggle_template_active(template.id, SHOP_DOMAIN).is_active is True
        assert get_template_id_for_target(shop.id) == template.id

    def test_delete_removes_resolution(self, shop, make_template) -> None:
        template = make_template("Specs")
        save_template_assignment(template.id, "PRODUCT", ["1"], SHOP_DOMAIN)

        delete_template(template.id, SHOP_DOMAIN)

        assert get_template(template.id, SHOP_DOMAIN) is None
        assert get_template_id_for_target(shop.id, product_id="1") is None

    def test_list_newest_first(self, shop, make_template) -> None:
        first = make_template("First")
        second = make_template("Second")

        assert [t.id for t in list_templates(SHOP_DOMAIN)] == [second.id, first.id]


class TestStorefrontPayload:
    def test_display_names_and_strict_booleans(self, shop, make_definition) -> None:
        named = make_definition(key="material", name="Material")
        unnamed = make_definition(key="weight")
        template = create_template(
            {
                "name": "Specs",
                "seeMoreEnabled": "true",
                "sections": [
                    {
                        "heading": "Build",
                        "metafields": [
                            {"metafieldDefinitionId": named.id},
                            {"metafieldDefinitionId": unnamed.id},
                            {"metafieldDefinitionId": named.id, "customName": "Fabric", "tooltipEnabled": "true",
                             "tooltipText": "Outer layer"},
                        ],
                    }
                ],
            },
            SHOP_DOMAIN,
        )

        payload = build_template_payload(template)
        slots = payload["sections"][0]["metafields"]

        assert [s["displayName"] for s in slots] == ["Material", "specs.weight", "Fabric"]
        assert slots[2]["tooltipEnabled"] is True
        assert slots[2]["tooltipText"] == "Outer layer"
        assert slots[0]["hideFromPC"] is False
        assert slots[0]["hideFromMobile"] is False
        assert payload["seeMoreEnabled"] is True
        assert payload["isAccordion"] is False

    def test_get_template_for_target(self, shop, make_template) -> None:
        template = make_template("Specs")
        save_template_assignment(template.id, "PRODUCT", ["1"], SHOP_DOMAIN)

        assert get_template_for_target(SHOP_DOMAIN, product_id="gid://shopify/Product/1").id == template.id
        assert get_template_for_target(SHOP_DOMAIN, product_id="2") is None
        assert get_template_for_target("missing.myshopify.com", product_id="1") is None


class TestReinstalledShop:
    def test_stale_cached_id_is_refreshed(self, shop) -> None:
        # a second shop keeps SQLite from reusing the purged row's id
        get_or_create_shop("other.myshopify.com")
        db.session.commit()
        cache = ShopIdCache()
        old_id = cache.get(SHOP_DOMAIN)

        # uninstall handled by another worker, then a reinstall
        delete_shop_data(SHOP_DOMAIN, cache=ShopIdCache())
        new_shop = get_or_create_shop(SHOP_DOMAIN)
        db.session.commit()
        definition = MetafieldDefinition(
            shop_id=new_shop.id, namespace="specs", key="material", owner_type="PRODUCT", type="single_line_text_field"
        )
        db.session.add(definition)
        db.session.commit()
        template = create_template(
            {"name": "Specs", "sections": [{"heading": "A", "metafields": [{"metafieldDefinitionId": definition.id}]}]},
            SHOP_DOMAIN,
        )
        save_template_assignment(template.id, "DEFAULT", [], SHOP_DOMAIN)
        assert cache.get(SHOP_DOMAIN) == old_id != new_shop.id

        assert get_template_for_target(SHOP_DOMAIN, product_id="1", cache=cache).id == template.id
        assert cache.get(SHOP_DOMAIN) == new_shop.id

    def test_purged_shop_resolves_nothing(self, shop, make_template) -> None:
        template = make_template("Specs")
        save_template_assignment(template.id, "DEFAULT", [], SHOP_DOMAIN)
        cache = ShopIdCache()
        cache.get(SHOP_DOMAIN)

        delete_shop_data(SHOP_DOMAIN, cache=ShopIdCache())

        assert get_template_for_target(SHOP_DOMAIN, product_id="1", cache=cache) is None
        assert SHOP_DOMAIN not in cache


class TestCatalogReads:
    def test_definitions_ordered(self, shop, make_definition) -> None:
        make_definition(namespace="z", key="a", owner_type="VARIANT")
        make_definition(namespace="b", key="b")
        make_definition(namespace="a", key="c")

        listed = [(d.owner_type, d.namespace) for d in list_metafield_definitions(SHOP_DOMAIN)]
        assert listed == [("PRODUCT", "a"), ("PRODUCT", "b"), ("VARIANT", "z")]

    def test_product_search(self, shop) -> None:
        db.session.add_all(
            [
                Product(shop_id=shop.id, shopify_id="1", title="Blue shirt"),
                Product(shop_id=shop.id, shopify_id="2", title="Red shirt"),
                Product(shop_id=shop.id, shopify_id="3", title="Hat"),
            ]
        )
        db.session.commit()

        assert [p["title"] for p in search_products(SHOP_DOMAIN, "shirt")] == ["Blue shirt", "Red shirt"]
        assert len(search_products(SHOP_DOMAIN)) == 3
