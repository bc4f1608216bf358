from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .core.auth_utils import new_id, now_iso
from .database import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('brigadir', 'customer', 'master')", name="ck_users_role"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(String(16), default="brigadir")
    created_at = Column(String, default=now_iso)


class Estimate(Base):
    __tablename__ = "estimates"

    id = Column(String(36), primary_key=True, default=new_id)
    brigadir_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    google_sheet_id = Column(String, nullable=False, default="")
    title = Column(String, nullable=False)
    # Legacy two-audience columns; the generalized model lives in estimate_views.
    customer_link_token = Column(String, nullable=False, unique=True)
    master_link_token = Column(String, nullable=False, unique=True)
    master_password = Column(String, nullable=True)
    column_mapping = Column(Text, default="{}")
    last_synced_at = Column(String, nullable=True)
    created_at = Column(String, default=now_iso)


class Section(Base):
    __tablename__ = "estimate_sections"

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    sort_order = Column(Integer, default=0)
    show_customer = Column(Integer, default=1)
    show_master = Column(Integer, default=1)
    created_at = Column(String, default=now_iso)


class Item(Base):
    __tablename__ = "estimate_items"

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    section_id = Column(String(36), ForeignKey("estimate_sections.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(String, nullable=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=True)
    quantity = Column(Float, default=0)
    customer_price = Column(Float, default=0)
    customer_total = Column(Float, default=0)
    master_price = Column(Float, default=0)
    master_total = Column(Float, default=0)
    sort_order = Column(Integer, default=0)
    show_customer = Column(Integer, default=1)
    show_master = Column(Integer, default=1)
    created_at = Column(String, default=now_iso)


class View(Base):
    __tablename__ = "estimate_views"

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    link_token = Column(String, nullable=False, unique=True)
    password = Column(String, nullable=True)
    sort_order = Column(Integer, default=0)
    is_customer_view = Column(Integer, default=0)
    created_at = Column(String, default=now_iso)


class ViewSectionSetting(Base):
    __tablename__ = "view_section_settings"
    __table_args__ = (UniqueConstraint("view_id", "section_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    view_id = Column(String(36), ForeignKey("estimate_views.id", ondelete="CASCADE"), nullable=False, index=True)
    section_id = Column(String(36), ForeignKey("estimate_sections.id", ondelete="CASCADE"), nullable=False, index=True)
    visible = Column(Integer, default=1)


class ViewItemSetting(Base):
    __tablename__ = "view_item_settings"
    __table_args__ = (UniqueConstraint("view_id", "item_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    view_id = Column(String(36), ForeignKey("estimate_views.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("estimate_items.id", ondelete="CASCADE"), nullable=False, index=True)
    price = Column(Float, default=0)
    total = Column(Float, default=0)
    visible = Column(Integer, default=1)


class Version(Base):
    __tablename__ = "estimate_versions"
    __table_args__ = (
        Index("uq_estimate_versions_number", "estimate_id", "version_number", unique=True),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    title = Column(String, nullable=True)
    created_at = Column(String, default=now_iso)


class VersionSection(Base):
    __tablename__ = "estimate_version_sections"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False, index=True)
    original_section_id = Column(String(36), nullable=False)
    name = Column(String, nullable=False)
    sort_order = Column(Integer, default=0)
    show_customer = Column(Integer, default=1)
    show_master = Column(Integer, default=1)


class VersionItem(Base):
    __tablename__ = "estimate_version_items"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False, index=True)
    version_section_id = Column(
        String(36),
        ForeignKey("estimate_version_sections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_item_id = Column(String(36), nullable=False)
    number = Column(String, nullable=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=True)
    quantity = Column(Float, default=0)
    customer_price = Column(Float, default=0)
    customer_total = Column(Float, default=0)
    master_price = Column(Float, default=0)
    master_total = Column(Float, default=0)
    sort_order = Column(Integer, default=0)
    show_customer = Column(Integer, default=1)
    show_master = Column(Integer, default=1)


class VersionView(Base):
    __tablename__ = "estimate_version_views"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False, index=True)
    original_view_id = Column(String(36), nullable=False)
    name = Column(String, nullable=False)
    sort_order = Column(Integer, default=0)


class VersionViewSectionSetting(Base):
    __tablename__ = "version_view_section_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False, index=True)
    version_view_id = Column(String(36), ForeignKey("estimate_version_views.id", ondelete="CASCADE"), nullable=False)
    version_section_id = Column(
        String(36),
        ForeignKey("estimate_version_sections.id", ondelete="CASCADE"),
        nullable=False,
    )
    visible = Column(Integer, default=1)


class VersionViewItemSetting(Base):
    __tablename__ = "version_view_item_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False, index=True)
    version_view_id = Column(String(36), ForeignKey("estimate_version_views.id", ondelete="CASCADE"), nullable=False)
    version_item_id = Column(String(36), ForeignKey("estimate_version_items.id", ondelete="CASCADE"), nullable=False)
    price = Column(Float, default=0)
    total = Column(Float, default=0)
    visible = Column(Integer, default=1)


class ActImage(Base):
    __tablename__ = "estimate_act_images"
    __table_args__ = (
        UniqueConstraint("estimate_id", "image_type"),
        CheckConstraint("image_type IN ('logo', 'stamp', 'signature')", name="ck_act_images_type"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    image_type = Column(String(16), nullable=False)
    data = Column(Text, nullable=False)
    created_at = Column(String, default=now_iso)


class SavedAct(Base):
    __tablename__ = "saved_acts"
    __table_args__ = (
        CheckConstraint("selection_mode IN ('sections', 'items')", name="ck_saved_acts_selection_mode"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    view_id = Column(String(36), nullable=True)
    act_number = Column(String, nullable=False)
    act_date = Column(String, nullable=False)
    executor_name = Column(String, default="")
    executor_details = Column(String, default="")
    customer_name = Column(String, default="")
    director_name = Column(String, default="")
    service_name = Column(String, default="")
    selection_mode = Column(String(16), default="sections")
    grand_total = Column(Float, default=0)
    created_at = Column(String, default=now_iso)


class SavedActItem(Base):
    __tablename__ = "saved_act_items"

    id = Column(String(36), primary_key=True, default=new_id)
    act_id = Column(String(36), ForeignKey("saved_acts.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(36), nullable=True, index=True)
    section_id = Column(String(36), nullable=True, index=True)
    name = Column(String, nullable=False)
    unit = Column(String, default="")
    quantity = Column(Float, default=0)
    price = Column(Float, default=0)
    total = Column(Float, default=0)
    sort_order = Column(Integer, default=0)


class Material(Base):
    __tablename__ = "estimate_materials"

    id = Column(String(36), primary_key=True, default=new_id)
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    article = Column(String, default="")
    brand = Column(String, default="")
    unit = Column(String, default="шт")
    price = Column(Float, default=0)
    quantity = Column(Float, default=1)
    total = Column(Float, default=0)
    url = Column(String, default="")
    description = Column(Text, default="")
    sort_order = Column(Integer, default=0)
    created_at = Column(String, default=now_iso)
    updated_at = Column(String, default=now_iso)
