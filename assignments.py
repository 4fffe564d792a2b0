import logging

from sqlalchemy.orm import selectinload

from errors import NotFoundError, ValidationError
from models import (
    ASSIGNMENT_COLLECTION,
    ASSIGNMENT_DEFAULT,
    ASSIGNMENT_PRODUCT,
    ASSIGNMENT_TYPES,
    AssignmentTarget,
    SpecificationTemplate,
    TemplateAssignment,
    db,
)
from shopify_ids import normalize_shopify_id
from shops import require_shop, shop_ids
from template_lookup import rebuild_template_lookup

logger = logging.getLogger(__name__)

NO_ASSIGNMENT = "NONE"


def normalize_assignment_type(assignment_type):
    if not assignment_type:
        return None
    value = str(assignment_type).strip().upper()
    # the admin UI calls the default rule "GLOBAL"
    if value == "GLOBAL":
        value = ASSIGNMENT_DEFAULT
    if value == NO_ASSIGNMENT:
        return None
    if value not in ASSIGNMENT_TYPES:
        raise ValidationError(f"Unknown assignment type: {assignment_type}")
    return value


def normalize_target_ids(target_ids):
    """Normalized, de-duplicated ids in submission order. A single id may be sent as a plain value."""
    if target_ids is None:
        target_ids = []
    elif isinstance(target_ids, (str, int)):
        target_ids = [target_ids]
    elif not isinstance(target_ids, (list, tuple)):
        raise ValidationError("targetIds must be a list of ids")
    seen = []
    for raw in target_ids:
        target_id = normalize_shopify_id(raw)
        if target_id and target_id not in seen:
            seen.append(target_id)
    return seen


def directly_owned_ids(assignments, assignment_type):
    owned = set()
    for assignment in assignments:
        if assignment.assignment_type == assignment_type and not assignment.is_excluded:
            owned |= assignment.direct_ids()
    return owned


def find_conflicts(assignments, assignment_type, target_ids):
    """
    Ids that another template already claims, either as a direct target or as
    part of an except rule's implicit inclusion set.
    """
    conflicts = []
    for target_id in target_ids:
        for assignment in assignments:
            if assignment.claims(assignment_type, target_id):
                conflicts.append({"targetId": target_id, "templateId": assignment.template_id})
                break
    return conflicts


def save_template_assignment(template_id, assignment_type, target_ids, shop_domain, is_excluded=False):
    """
    Replace the assignment of a template.

    Validation happens before anything is written. The old assignment is
    deleted and the new one created in a single transaction, with the lookup
    table rebuilt after each step, so readers see either the old or the new
    state. Except rules are widened to exclude every id another template owns
    directly; the number of ids added that way is reported back.
    """
    shop = require_shop(shop_domain)
    template = SpecificationTemplate.query.filter_by(id=template_id, shop_id=shop.id).first()
    if template is None:
        raise NotFoundError("Template not found")

    assignment_type = normalize_assignment_type(assignment_type)
    requested = normalize_target_ids(target_ids)
    is_excluded = bool(is_excluded) and assignment_type in (ASSIGNMENT_PRODUCT, ASSIGNMENT_COLLECTION)

    others = (
        TemplateAssignment.query.filter(
            TemplateAssignment.shop_id == shop.id,
            TemplateAssignment.template_id != template.id,
        )
        .options(selectinload(TemplateAssignment.targets))
        .order_by(TemplateAssignment.id)
        .all()
    )

    auto_added = 0
    if assignment_type == ASSIGNMENT_DEFAULT:
        existing = next((a for a in others if a.assignment_type == ASSIGNMENT_DEFAULT), None)
        if existing is not None:
            raise ValidationError(
                f"Another template ({existing.template_id}) is already assigned globally",
                details={"templateId": existing.template_id},
            )
        requested = []
    elif is_excluded:
        submitted = set(requested)
        for target_id in sorted(directly_owned_ids(others, assignment_type)):
            if target_id not in submitted:
                requested.append(target_id)
                auto_added += 1
        if auto_added:
            logger.info(
                "Added %d %s ids owned by other templates to the exclusions of template %s",
                auto_added,
                assignment_type.lower(),
                template.id,
            )
    elif assignment_type is not None and requested:
        conflicts = find_conflicts(others, assignment_type, requested)
        if conflicts:
            raise ValidationError(
                "Some targets are already assigned to other templates",
                details={"conflicts": conflicts},
            )

    try:
        existing = TemplateAssignment.query.filter_by(template_id=template.id).first()
        if existing is not None:
            db.session.delete(existing)
            db.session.flush()
        rebuild_template_lookup(shop.id)

        assignment = None
        if assignment_type is not None:
            target_type = ASSIGNMENT_PRODUCT if assignment_type == ASSIGNMENT_PRODUCT else ASSIGNMENT_COLLECTION
            assignment = TemplateAssignment(
                shop_id=shop.id,
                template_id=template.id,
                assignment_type=assignment_type,
                is_excluded=is_excluded,
                targets=[
                    AssignmentTarget(
                        target_shopify_id=target_id,
                        target_type=target_type,
                        is_excluded=is_excluded,
                    )
                    for target_id in requested
                ],
            )
            db.session.add(assignment)
            db.session.flush()
            rebuild_template_lookup(shop.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Saved assignment for template %s: type=%s excluded=%s targets=%d",
        template.id,
        assignment_type or NO_ASSIGNMENT,
        is_excluded,
        len(requested),
    )
    return {
        "success": True,
        "assignment": serialize_assignment(assignment) if assignment is not None else None,
        "autoAddedCount": auto_added,
        "autoAddedType": assignment_type if auto_added else None,
    }


def serialize_assignment(assignment):
    if assignment is None:
        return None
    return {
        "id": assignment.id,
        "templateId": assignment.template_id,
        "assignmentType": assignment.assignment_type,
        "isExcluded": assignment.is_excluded,
        "isExceptRule": assignment.is_except_rule,
        "targets": [
            {
                "id": target.id,
                "targetShopifyId": target.target_shopify_id,
                "targetType": target.target_type,
                "isExcluded": target.is_excluded,
            }
            for target in assignment.targets
        ],
    }


def list_assignments(shop_domain, cache=shop_ids):
    """Every assignment of the shop, with its template name, for duplicate checks in the UI."""
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        return []
    assignments = (
        TemplateAssignment.query.filter_by(shop_id=shop_id)
        .options(selectinload(TemplateAssignment.targets), selectinload(TemplateAssignment.template))
        .order_by(TemplateAssignment.id)
        .all()
    )
    result = []
    for assignment in assignments:
        item = serialize_assignment(assignment)
        item["template"] = {"id": assignment.template.id, "name": assignment.template.name}
        result.append(item)
    return result
