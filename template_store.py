import json
import logging

from sqlalchemy.orm import selectinload

from assignments import serialize_assignment
from errors import NotFoundError, ValidationError
from models import (
    Collection,
    MetafieldDefinition,
    Product,
    SpecificationTemplate,
    TemplateSection,
    TemplateSectionMetafield,
    db,
)
from shops import require_shop, shop_ids
from template_lookup import get_template_id_for_target, rebuild_template_lookup

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 100

DEFAULT_STYLING = {
    "backgroundColor": "#ffffff",
    "textColor": "#000000",
    "headingColor": "#000000",
    "headingFontSize": "18px",
    "headingFontWeight": "bold",
    "headingFontFamily": "Arial",
    "textFontSize": "14px",
    "textFontFamily": "Arial",
    "borderWidth": "0px",
    "borderRadius": "0px",
    "padding": "10px",
    "sectionBorderEnabled": False,
    "sectionBorderColor": "#000000",
    "sectionBorderStyle": "solid",
    "rowBorderEnabled": False,
    "rowBorderColor": "#000000",
    "rowBorderStyle": "solid",
    "rowBorderWidth": "1px",
    "tdBackgroundColor": "transparent",
    "rowBackgroundEnabled": False,
    "oddRowBackgroundColor": "#f0f0f0",
    "evenRowBackgroundColor": "#ffffff",
    "textTransform": "none",
}

# request key -> model attribute
DISPLAY_FLAGS = {
    "isActive": "is_active",
    "isAccordion": "is_accordion",
    "isAccordionHideFromPC": "is_accordion_hide_from_pc",
    "isAccordionHideFromMobile": "is_accordion_hide_from_mobile",
    "seeMoreEnabled": "see_more_enabled",
    "seeMoreHideFromPC": "see_more_hide_from_pc",
    "seeMoreHideFromMobile": "see_more_hide_from_mobile",
}


def as_bool(value):
    """Form posts send "true"/"false" strings; JSON sends booleans."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "on", "yes")
    return value is True or value == 1


def _clean_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def load_styling(template):
    try:
        styling = json.loads(template.styling or "{}")
    except ValueError:
        logger.warning("Template %s has unreadable styling, using defaults", template.id)
        styling = {}
    return styling if isinstance(styling, dict) else {}


# ---------------- INPUT ----------------
def parse_sections(shop_id, sections):
    """
    Validate submitted sections and build TemplateSection rows.

    Every section needs a heading. Sections without metafields are dropped.
    A slot cannot hide on both desktop and mobile: desktop wins.
    """
    sections = sections or []
    definition_ids = {
        slot.get("metafieldDefinitionId")
        for section in sections
        for slot in (section.get("metafields") or [])
        if slot.get("metafieldDefinitionId") not in (None, "")
    }
    known = {}
    if definition_ids:
        try:
            wanted = {int(value) for value in definition_ids}
        except (TypeError, ValueError):
            raise ValidationError("Invalid metafield definition id")
        known = {
            definition.id: definition
            for definition in MetafieldDefinition.query.filter(
                MetafieldDefinition.shop_id == shop_id, MetafieldDefinition.id.in_(wanted)
            )
        }

    built = []
    for index, section in enumerate(sections):
        heading = _clean_text(section.get("heading"))
        if not heading:
            raise ValidationError(f"Section {index + 1} title cannot be empty")

        slots = []
        for slot in section.get("metafields") or []:
            raw_id = slot.get("metafieldDefinitionId")
            if raw_id in (None, ""):
                continue
            definition = known.get(int(raw_id))
            if definition is None:
                raise ValidationError(f"Unknown metafield definition: {raw_id}")
            hide_from_pc = as_bool(slot.get("hideFromPC"))
            slots.append(
                TemplateSectionMetafield(
                    metafield_definition_id=definition.id,
                    position=len(slots),
                    custom_name=_clean_text(slot.get("customName")),
                    tooltip_enabled=as_bool(slot.get("tooltipEnabled")),
                    tooltip_text=_clean_text(slot.get("tooltipText")),
                    hide_from_pc=hide_from_pc,
                    hide_from_mobile=as_bool(slot.get("hideFromMobile")) and not hide_from_pc,
                )
            )
        if slots:
            built.append(TemplateSection(heading=heading, position=len(built), metafields=slots))
    return built


def _validated_name(data):
    name = _clean_text(data.get("name"))
    if not name:
        raise ValidationError("Template name cannot be empty")
    return name


def _merged_styling(styling):
    merged = dict(DEFAULT_STYLING)
    if isinstance(styling, dict):
        merged.update(styling)
    return json.dumps(merged)


def _get_owned_template(template_id, shop):
    template = SpecificationTemplate.query.filter_by(id=template_id, shop_id=shop.id).first()
    if template is None:
        raise NotFoundError("Template not found")
    return template


# ---------------- CRUD ----------------
def list_templates(shop_domain, cache=shop_ids):
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        return []
    return (
        SpecificationTemplate.query.filter_by(shop_id=shop_id)
        .options(
            selectinload(SpecificationTemplate.sections)
            .selectinload(TemplateSection.metafields)
            .selectinload(TemplateSectionMetafield.definition),
            selectinload(SpecificationTemplate.assignment),
        )
        .order_by(SpecificationTemplate.created_at.desc(), SpecificationTemplate.id.desc())
        .all()
    )


def get_template(template_id, shop_domain):
    shop_id = shop_ids.get(shop_domain)
    if shop_id is None:
        return None
    return SpecificationTemplate.query.filter_by(id=template_id, shop_id=shop_id).first()


def create_template(data, shop_domain):
    shop = require_shop(shop_domain)
    name = _validated_name(data)
    sections = parse_sections(shop.id, data.get("sections"))

    template = SpecificationTemplate(
        shop_id=shop.id,
        name=name,
        styling=_merged_styling(data.get("styling")),
        sections=sections,
    )
    for key, attr in DISPLAY_FLAGS.items():
        if key in data:
            setattr(template, attr, as_bool(data[key]))
    if "isActive" not in data:
        template.is_active = True

    try:
        db.session.add(template)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Created template %s (%s) for %s", template.id, name, shop_domain)
    return template


def update_template(template_id, data, shop_domain):
    """Replace name, flags, styling and sections. Rebuilds the lookup if activation changed."""
    shop = require_shop(shop_domain)
    template = _get_owned_template(template_id, shop)
    name = _validated_name(data)
    sections = parse_sections(shop.id, data.get("sections"))

    was_active = template.is_active
    try:
        template.name = name
        template.styling = _merged_styling(data.get("styling"))
        for key, attr in DISPLAY_FLAGS.items():
            if key in data:
                setattr(template, attr, as_bool(data[key]))
        template.sections.clear()
        db.session.flush()
        template.sections.extend(sections)
        db.session.flush()
        if template.is_active != was_active:
            rebuild_template_lookup(shop.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return template


def duplicate_template(template_id, shop_domain):
    """Copy sections and styling into a new, inactive, unassigned template."""
    shop = require_shop(shop_domain)
    original = _get_owned_template(template_id, shop)

    copy = SpecificationTemplate(
        shop_id=shop.id,
        name=f"{original.name} duplicate",
        styling=json.dumps(load_styling(original)),
        is_active=False,
        sections=[
            TemplateSection(
                heading=section.heading,
                position=section_index,
                metafields=[
                    TemplateSectionMetafield(
                        metafield_definition_id=slot.metafield_definition_id,
                        position=slot_index,
                        custom_name=slot.custom_name,
                        tooltip_enabled=slot.tooltip_enabled,
                        tooltip_text=slot.tooltip_text,
                        hide_from_pc=slot.hide_from_pc,
                        hide_from_mobile=slot.hide_from_mobile,
                    )
                    for slot_index, slot in enumerate(section.metafields)
                ],
            )
            for section_index, section in enumerate(original.sections)
        ],
    )
    for attr in DISPLAY_FLAGS.values():
        if attr != "is_active":
            setattr(copy, attr, getattr(original, attr))

    try:
        db.session.add(copy)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return copy


def toggle_template_active(template_id, shop_domain):
    shop = require_shop(shop_domain)
    template = _get_owned_template(template_id, shop)
    try:
        template.is_active = not template.is_active
        db.session.flush()
        rebuild_template_lookup(shop.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return template


def delete_template(template_id, shop_domain):
    shop = require_shop(shop_domain)
    template = _get_owned_template(template_id, shop)
    try:
        db.session.delete(template)
        db.session.flush()
        rebuild_template_lookup(shop.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Deleted template %s for %s", template_id, shop_domain)
    return True


# ---------------- CATALOG READS ----------------
def list_metafield_definitions(shop_domain, cache=shop_ids):
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        return []
    return (
        MetafieldDefinition.query.filter_by(shop_id=shop_id)
        .order_by(MetafieldDefinition.owner_type, MetafieldDefinition.namespace, MetafieldDefinition.key)
        .all()
    )


def _search(model, shop_domain, search, cache):
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        return []
    query = model.query.filter(model.shop_id == shop_id)
    if search:
        query = query.filter(model.title.ilike(f"%{search}%"))
    rows = query.order_by(model.title).limit(SEARCH_LIMIT).all()
    return [
        {"id": row.id, "shopifyId": row.shopify_id, "title": row.title, "handle": row.handle}
        for row in rows
    ]


def search_products(shop_domain, search="", cache=shop_ids):
    return _search(Product, shop_domain, search, cache)


def search_collections(shop_domain, search="", cache=shop_ids):
    return _search(Collection, shop_domain, search, cache)


# ---------------- OUTPUT ----------------
def serialize_slot(slot):
    definition = slot.definition
    return {
        "id": slot.id,
        "metafieldDefinitionId": slot.metafield_definition_id,
        "order": slot.position,
        "customName": slot.custom_name,
        "tooltipEnabled": slot.tooltip_enabled is True,
        "tooltipText": slot.tooltip_text,
        "hideFromPC": slot.hide_from_pc is True,
        "hideFromMobile": slot.hide_from_mobile is True,
        "metafieldDefinition": definition.to_dict() if definition else None,
    }


def serialize_template(template):
    """Admin view of a template, assignment included."""
    body = {
        "id": template.id,
        "name": template.name,
        "styling": load_styling(template),
        "createdAt": template.created_at.isoformat() if template.created_at else None,
        "updatedAt": template.updated_at.isoformat() if template.updated_at else None,
        "sections": [
            {
                "id": section.id,
                "heading": section.heading,
                "order": section.position,
                "metafields": [serialize_slot(slot) for slot in section.metafields],
            }
            for section in template.sections
        ],
        "assignment": serialize_assignment(template.assignment),
    }
    for key, attr in DISPLAY_FLAGS.items():
        body[key] = getattr(template, attr) is True
    return body


def build_template_payload(template):
    """Storefront view: only what the theme block renders, flags coerced to real booleans."""
    return {
        "id": template.id,
        "name": template.name,
        "isAccordion": template.is_accordion is True,
        "isAccordionHideFromPC": template.is_accordion_hide_from_pc is True,
        "isAccordionHideFromMobile": template.is_accordion_hide_from_mobile is True,
        "seeMoreEnabled": template.see_more_enabled is True,
        "seeMoreHideFromPC": template.see_more_hide_from_pc is True,
        "seeMoreHideFromMobile": template.see_more_hide_from_mobile is True,
        "styling": load_styling(template),
        "sections": [
            {
                "heading": section.heading,
                "metafields": [
                    {
                        "namespace": slot.definition.namespace,
                        "key": slot.definition.key,
                        "ownerType": slot.definition.owner_type,
                        "name": slot.definition.name,
                        "type": slot.definition.type,
                        "customName": slot.custom_name,
                        "displayName": slot.display_name,
                        "tooltipEnabled": slot.tooltip_enabled is True,
                        "tooltipText": slot.tooltip_text,
                        "hideFromPC": slot.hide_from_pc is True,
                        "hideFromMobile": slot.hide_from_mobile is True,
                    }
                    for slot in section.metafields
                ],
            }
            for section in template.sections
        ],
    }


def get_template_for_target(shop_domain, product_id=None, collection_id=None, cache=shop_ids):
    """The resolved, active template for a product/collection, or None."""
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        return None
    template_id = get_template_id_for_target(shop_id, product_id, collection_id)
    if template_id is None:
        # another worker may have purged and recreated the shop
        current_id = cache.refresh(shop_domain)
        if current_id is None or current_id == shop_id:
            return None
        shop_id = current_id
        template_id = get_template_id_for_target(shop_id, product_id, collection_id)
        if template_id is None:
            return None
    template = (
        SpecificationTemplate.query.filter_by(id=template_id, shop_id=shop_id)
        .options(
            selectinload(SpecificationTemplate.sections)
            .selectinload(TemplateSection.metafields)
            .selectinload(TemplateSectionMetafield.definition)
        )
        .first()
    )
    if template is None or not template.is_active:
        return None
    return template
