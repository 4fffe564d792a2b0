from flask_sqlalchemy import SQLAlchemy

from shopify_ids import normalize_shopify_id

db = SQLAlchemy()

ASSIGNMENT_DEFAULT = "DEFAULT"
ASSIGNMENT_PRODUCT = "PRODUCT"
ASSIGNMENT_COLLECTION = "COLLECTION"
ASSIGNMENT_TYPES = (ASSIGNMENT_DEFAULT, ASSIGNMENT_PRODUCT, ASSIGNMENT_COLLECTION)

OWNER_PRODUCT = "PRODUCT"
OWNER_VARIANT = "VARIANT"


class Shop(db.Model):
    __tablename__ = "shops"
    id = db.Column(db.Integer, primary_key=True)
    shop_domain = db.Column(db.String(255), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    products = db.relationship("Product", backref="shop", cascade="all, delete")
    collections = db.relationship("Collection", backref="shop", cascade="all, delete")
    metafield_definitions = db.relationship(
        "MetafieldDefinition", backref="shop", cascade="all, delete"
    )
    templates = db.relationship("SpecificationTemplate", backref="shop", cascade="all, delete")
    lookup_rows = db.relationship("TemplateLookup", cascade="all, delete")
    webhook_events = db.relationship("WebhookEvent", cascade="all, delete")
    plan = db.relationship("ShopPlan", uselist=False, cascade="all, delete")


class StoreToken(db.Model):
    __tablename__ = "store_tokens"
    id = db.Column(db.Integer, primary_key=True)
    shop = db.Column(db.String(255), unique=True, nullable=False)
    access_token = db.Column(db.Text, nullable=False)
    scope = db.Column(db.Text)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())


# ---------------- CATALOG MIRROR ----------------
class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = (db.UniqueConstraint("shop_id", "shopify_id"),)
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    shopify_id = db.Column(db.String(64), nullable=False)  # normalized numeric id
    title = db.Column(db.String(255), nullable=False)
    handle = db.Column(db.String(255))


class Collection(db.Model):
    __tablename__ = "collections"
    __table_args__ = (db.UniqueConstraint("shop_id", "shopify_id"),)
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    shopify_id = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    handle = db.Column(db.String(255))


class MetafieldDefinition(db.Model):
    __tablename__ = "metafield_definitions"
    __table_args__ = (db.UniqueConstraint("shop_id", "namespace", "key", "owner_type"),)
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    namespace = db.Column(db.String(255), nullable=False)
    key = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255))
    type = db.Column(db.String(128), nullable=False)
    owner_type = db.Column(db.String(16), nullable=False)

    @property
    def display_name(self):
        return self.name or f"{self.namespace}.{self.key}"

    def to_dict(self):
        return {
            "id": self.id,
            "namespace": self.namespace,
            "key": self.key,
            "ownerType": self.owner_type,
            "name": self.name,
            "type": self.type,
        }


# ---------------- TEMPLATES ----------------
class SpecificationTemplate(db.Model):
    __tablename__ = "specification_templates"
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_accordion = db.Column(db.Boolean, nullable=False, default=False)
    is_accordion_hide_from_pc = db.Column(db.Boolean, nullable=False, default=False)
    is_accordion_hide_from_mobile = db.Column(db.Boolean, nullable=False, default=False)
    see_more_enabled = db.Column(db.Boolean, nullable=False, default=False)
    see_more_hide_from_pc = db.Column(db.Boolean, nullable=False, default=False)
    see_more_hide_from_mobile = db.Column(db.Boolean, nullable=False, default=False)
    styling = db.Column(db.Text, nullable=False, default="{}")  # JSON blob, opaque to resolution
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())

    sections = db.relationship(
        "TemplateSection",
        backref="template",
        order_by="TemplateSection.position",
        cascade="all, delete-orphan",
    )
    assignment = db.relationship(
        "TemplateAssignment", backref="template", uselist=False, cascade="all, delete"
    )
    lookup_rows = db.relationship("TemplateLookup", cascade="all, delete")


class TemplateSection(db.Model):
    __tablename__ = "template_sections"
    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("specification_templates.id"), nullable=False, index=True
    )
    heading = db.Column(db.String(255), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    metafields = db.relationship(
        "TemplateSectionMetafield",
        backref="section",
        order_by="TemplateSectionMetafield.position",
        cascade="all, delete-orphan",
    )


class TemplateSectionMetafield(db.Model):
    __tablename__ = "template_section_metafields"
    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey("template_sections.id"), nullable=False, index=True)
    metafield_definition_id = db.Column(
        db.Integer, db.ForeignKey("metafield_definitions.id"), nullable=False
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    custom_name = db.Column(db.String(255))
    tooltip_enabled = db.Column(db.Boolean, nullable=False, default=False)
    tooltip_text = db.Column(db.Text)
    hide_from_pc = db.Column(db.Boolean, nullable=False, default=False)
    hide_from_mobile = db.Column(db.Boolean, nullable=False, default=False)

    definition = db.relationship("MetafieldDefinition")

    @property
    def display_name(self):
        return self.custom_name or self.definition.display_name


# ---------------- ASSIGNMENTS ----------------
class TemplateAssignment(db.Model):
    """
    The single rule binding a template to its targets.

    DEFAULT carries no targets. PRODUCT/COLLECTION either list the ids that get
    the template (is_excluded False) or the ids that do NOT get it while every
    other id of that type does (is_excluded True).
    """

    __tablename__ = "template_assignments"
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("specification_templates.id"), unique=True, nullable=False
    )
    assignment_type = db.Column(db.String(16), nullable=False)
    is_excluded = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    targets = db.relationship(
        "AssignmentTarget",
        backref="assignment",
        order_by="AssignmentTarget.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_except_rule(self):
        # an empty exclusion list would otherwise mean "everything"
        return bool(self.is_excluded and self.targets)

    def direct_ids(self):
        return {
            normalize_shopify_id(t.target_shopify_id)
            for t in self.targets
            if not t.is_excluded and t.target_type == self.assignment_type
        } - {None}

    def excluded_ids(self):
        return {
            normalize_shopify_id(t.target_shopify_id)
            for t in self.targets
            if t.is_excluded and t.target_type == self.assignment_type
        } - {None}

    def claims(self, assignment_type, target_id):
        """True when this assignment currently gives `target_id` its template."""
        if self.assignment_type != assignment_type:
            return False
        if self.is_except_rule:
            return target_id not in self.excluded_ids()
        if self.is_excluded:
            return False
        return target_id in self.direct_ids()


class AssignmentTarget(db.Model):
    __tablename__ = "assignment_targets"
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("template_assignments.id"), nullable=False, index=True
    )
    target_shopify_id = db.Column(db.String(64), nullable=False)
    target_type = db.Column(db.String(16), nullable=False)
    is_excluded = db.Column(db.Boolean, nullable=False, default=False)


class TemplateLookup(db.Model):
    """
    Materialized resolution table, derived from assignments.

    Rows per active template:
      direct target      -> product_id/collection_id set, is_excluded False
      except rule        -> one catch-all row (both ids NULL, target_type set)
                            plus one is_excluded row per excluded id
      global default     -> is_default True
    """

    __tablename__ = "template_lookup"
    __table_args__ = (
        db.Index("ix_template_lookup_shop_product", "shop_id", "product_id"),
        db.Index("ix_template_lookup_shop_collection", "shop_id", "collection_id"),
        db.Index("ix_template_lookup_shop_default", "shop_id", "is_default"),
    )
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey("specification_templates.id"), nullable=False)
    product_id = db.Column(db.String(64))
    collection_id = db.Column(db.String(64))
    target_type = db.Column(db.String(16))
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_excluded = db.Column(db.Boolean, nullable=False, default=False)
    priority = db.Column(db.Integer, nullable=False)

    def as_tuple(self):
        return (
            self.template_id,
            self.product_id,
            self.collection_id,
            self.target_type,
            self.is_default,
            self.is_excluded,
            self.priority,
        )


# ---------------- OPERATIONS ----------------
class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    topic = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False)  # "success" or "error"
    error_message = db.Column(db.Text)
    payload = db.Column(db.Text)
    response_time = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), index=True)


class ShopPlan(db.Model):
    __tablename__ = "shop_plans"
    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), unique=True, nullable=False)
    plan_key = db.Column(db.String(32), nullable=False)
    products_count_at_selection = db.Column(db.Integer, nullable=False, default=0)
    selected_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())
