"""
Template resolution for products and collections.

Two paths answer the same question, "which template applies here?":

* resolve_template_id() evaluates the assignment rules directly.
* find_template_id() reads the materialized TemplateLookup rows, which
  rebuild_template_lookup() regenerates from the assignments after every write.

Priority is fixed: product rules, then collection rules, then the shop's global
default. Within a type a direct assignment beats an "except" rule. Inactive
templates never resolve.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased, selectinload

from models import (
    ASSIGNMENT_COLLECTION,
    ASSIGNMENT_DEFAULT,
    ASSIGNMENT_PRODUCT,
    SpecificationTemplate,
    TemplateAssignment,
    TemplateLookup,
    db,
)
from shopify_ids import normalize_shopify_id

logger = logging.getLogger(__name__)

PRIORITY_PRODUCT = 1
PRIORITY_PRODUCT_EXCEPT = 2
PRIORITY_COLLECTION = 3
PRIORITY_COLLECTION_EXCEPT = 4
PRIORITY_DEFAULT = 5

# assignment type -> (lookup column, direct priority, except priority)
TARGET_COLUMNS = {
    ASSIGNMENT_PRODUCT: ("product_id", PRIORITY_PRODUCT, PRIORITY_PRODUCT_EXCEPT),
    ASSIGNMENT_COLLECTION: ("collection_id", PRIORITY_COLLECTION, PRIORITY_COLLECTION_EXCEPT),
}

# shops whose empty table has already been rebuilt once by this process
_self_healed_shops = set()


def active_assignments(shop_id):
    """Assignments of active templates, oldest first."""
    return (
        TemplateAssignment.query.join(
            SpecificationTemplate, TemplateAssignment.template_id == SpecificationTemplate.id
        )
        .filter(
            TemplateAssignment.shop_id == shop_id,
            SpecificationTemplate.is_active.is_(True),
        )
        .options(selectinload(TemplateAssignment.targets))
        .order_by(TemplateAssignment.id)
        .all()
    )


def _targets_in_order(*raw_ids):
    return [
        (assignment_type, normalize_shopify_id(raw))
        for assignment_type, raw in zip((ASSIGNMENT_PRODUCT, ASSIGNMENT_COLLECTION), raw_ids)
        if normalize_shopify_id(raw)
    ]


# ---------------- LIVE RESOLUTION ----------------
def match_assignment(assignments, assignment_type, target_id):
    """First assignment of `assignment_type` that claims `target_id`, direct rules first."""
    for assignment in assignments:
        if (
            assignment.assignment_type == assignment_type
            and not assignment.is_excluded
            and target_id in assignment.direct_ids()
        ):
            return assignment
    for assignment in assignments:
        if (
            assignment.assignment_type == assignment_type
            and assignment.is_except_rule
            and target_id not in assignment.excluded_ids()
        ):
            return assignment
    return None


def resolve_template_id(shop_id, product_id=None, collection_id=None, assignments=None):
    """Evaluate the assignment rules for a target and return a template id or None."""
    if shop_id is None:
        return None
    if assignments is None:
        assignments = active_assignments(shop_id)
    if not assignments:
        return None

    for assignment_type, target_id in _targets_in_order(product_id, collection_id):
        assignment = match_assignment(assignments, assignment_type, target_id)
        if assignment is not None:
            return assignment.template_id

    for assignment in assignments:
        if assignment.assignment_type == ASSIGNMENT_DEFAULT:
            return assignment.template_id
    return None


# ---------------- MATERIALIZATION ----------------
def build_lookup_rows(shop_id, assignments):
    """Expand assignments into TemplateLookup rows, in a stable order."""
    rows = []
    claimed = {ASSIGNMENT_PRODUCT: set(), ASSIGNMENT_COLLECTION: set()}
    has_default = False

    for assignment in assignments:
        kind = assignment.assignment_type
        if kind == ASSIGNMENT_DEFAULT:
            if has_default:
                logger.warning(
                    "Shop %s has more than one global assignment, ignoring template %s",
                    shop_id,
                    assignment.template_id,
                )
                continue
            has_default = True
            rows.append(
                TemplateLookup(
                    shop_id=shop_id,
                    template_id=assignment.template_id,
                    is_default=True,
                    priority=PRIORITY_DEFAULT,
                )
            )
            continue

        if kind not in TARGET_COLUMNS:
            logger.warning("Unknown assignment type %r on template %s", kind, assignment.template_id)
            continue
        column, direct_priority, except_priority = TARGET_COLUMNS[kind]

        if assignment.is_except_rule:
            rows.append(
                TemplateLookup(
                    shop_id=shop_id,
                    template_id=assignment.template_id,
                    target_type=kind,
                    priority=except_priority,
                )
            )
            for target_id in sorted(assignment.excluded_ids()):
                rows.append(
                    TemplateLookup(
                        shop_id=shop_id,
                        template_id=assignment.template_id,
                        target_type=kind,
                        is_excluded=True,
                        priority=except_priority,
                        **{column: target_id},
                    )
                )
        elif assignment.is_excluded:
            logger.warning(
                "Template %s has an except assignment with no exclusions, it resolves nothing",
                assignment.template_id,
            )
        else:
            for target_id in sorted(assignment.direct_ids()):
                if target_id in claimed[kind]:
                    continue
                claimed[kind].add(target_id)
                rows.append(
                    TemplateLookup(
                        shop_id=shop_id,
                        template_id=assignment.template_id,
                        target_type=kind,
                        priority=direct_priority,
                        **{column: target_id},
                    )
                )
    return rows


def rebuild_template_lookup(shop_id):
    """
    Replace every lookup row of the shop with rows derived from the current
    assignments. Runs inside the caller's transaction: it flushes but never
    commits, so the old rows stay visible to other sessions until the caller
    commits.
    """
    TemplateLookup.query.filter_by(shop_id=shop_id).delete()
    rows = build_lookup_rows(shop_id, active_assignments(shop_id))
    db.session.add_all(rows)
    db.session.flush()
    logger.info("Rebuilt template lookup for shop %s: %d rows", shop_id, len(rows))
    return len(rows)


def lookup_snapshot(shop_id):
    """Lookup rows of a shop as plain tuples, without surrogate ids."""
    rows = TemplateLookup.query.filter_by(shop_id=shop_id).all()
    return sorted((row.as_tuple() for row in rows), key=repr)


# ---------------- LOOKUP QUERIES ----------------
def _direct_row(shop_id, assignment_type, target_id):
    column = getattr(TemplateLookup, TARGET_COLUMNS[assignment_type][0])
    return (
        TemplateLookup.query.filter(
            TemplateLookup.shop_id == shop_id,
            TemplateLookup.target_type == assignment_type,
            TemplateLookup.is_excluded.is_(False),
            column == target_id,
        )
        .order_by(TemplateLookup.priority, TemplateLookup.id)
        .first()
    )


def _except_row(shop_id, assignment_type, target_id):
    column_name = TARGET_COLUMNS[assignment_type][0]
    excluded = aliased(TemplateLookup)
    is_excluded_here = (
        db.session.query(excluded.id)
        .filter(
            excluded.shop_id == TemplateLookup.shop_id,
            excluded.template_id == TemplateLookup.template_id,
            excluded.is_excluded.is_(True),
            getattr(excluded, column_name) == target_id,
        )
        .exists()
    )
    return (
        TemplateLookup.query.filter(
            TemplateLookup.shop_id == shop_id,
            TemplateLookup.target_type == assignment_type,
            TemplateLookup.is_excluded.is_(False),
            getattr(TemplateLookup, column_name).is_(None),
            ~is_excluded_here,
        )
        .order_by(TemplateLookup.priority, TemplateLookup.id)
        .first()
    )


def _default_row(shop_id):
    return (
        TemplateLookup.query.filter(
            TemplateLookup.shop_id == shop_id, TemplateLookup.is_default.is_(True)
        )
        .order_by(TemplateLookup.priority, TemplateLookup.id)
        .first()
    )


def find_template_id(shop_id, product_id=None, collection_id=None):
    """Resolve through the lookup table only."""
    if shop_id is None:
        return None
    for assignment_type, target_id in _targets_in_order(product_id, collection_id):
        row = _direct_row(shop_id, assignment_type, target_id)
        if row is None:
            row = _except_row(shop_id, assignment_type, target_id)
        if row is not None:
            return row.template_id
    row = _default_row(shop_id)
    return row.template_id if row else None


def lookup_row_count(shop_id):
    return (
        db.session.query(func.count(TemplateLookup.id))
        .filter(TemplateLookup.shop_id == shop_id)
        .scalar()
    )


def lookup_is_stale(shop_id):
    """An empty table while active assignments exist means a rebuild was missed."""
    if lookup_row_count(shop_id):
        return False
    return (
        db.session.query(func.count(TemplateAssignment.id))
        .join(SpecificationTemplate, TemplateAssignment.template_id == SpecificationTemplate.id)
        .filter(
            TemplateAssignment.shop_id == shop_id,
            SpecificationTemplate.is_active.is_(True),
        )
        .scalar()
        > 0
    )


def get_template_id_for_target(shop_id, product_id=None, collection_id=None):
    """
    Resolve via the lookup table. When the table is empty but assignments exist,
    rebuild it once per process and retry; if it is still empty, evaluate the
    rules directly.
    """
    if shop_id is None:
        return None
    template_id = find_template_id(shop_id, product_id, collection_id)
    if template_id is not None:
        return template_id

    if shop_id not in _self_healed_shops and lookup_is_stale(shop_id):
        _self_healed_shops.add(shop_id)
        logger.warning("Lookup table is empty for shop %s, rebuilding", shop_id)
        try:
            rebuild_template_lookup(shop_id)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Error rebuilding lookup table for shop %s", shop_id)
        else:
            template_id = find_template_id(shop_id, product_id, collection_id)
            if template_id is not None:
                return template_id

    if lookup_row_count(shop_id) == 0:
        return resolve_template_id(shop_id, product_id, collection_id)
    return None
