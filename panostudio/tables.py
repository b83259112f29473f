import uuid
from sqlalchemy import (
    Column, String, Text, Float, Integer, Date, DateTime, JSON, ForeignKey, UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base

from panostudio.utils import utcnow as _now

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class PanoramaImageRow(Base):
    __tablename__ = "panorama_images"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    original_url = Column(Text, nullable=False, index=True)
    processed_url = Column(Text, nullable=True, index=True)
    thumbnail_url = Column(Text, nullable=True)
    preview_url = Column(Text, nullable=True)
    panel_count = Column(Integer, nullable=True)
    title = Column(Text, nullable=False, default="")
    location_name = Column(Text, nullable=False, default="")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    description = Column(Text, nullable=False, default="")
    date_taken = Column(Date, nullable=True, index=True)
    status = Column(String(16), nullable=False, default="draft", index=True)
    adjustments = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    instagram_post_id = Column(String(255), nullable=True)


class PanoramaPanelRow(Base):
    __tablename__ = "panorama_panels"

    id = Column(String(36), primary_key=True, default=_uuid)
    panorama_image_id = Column(String(36), ForeignKey("panorama_images.id"), nullable=False, index=True)
    panel_order = Column(Integer, nullable=False)
    panel_url = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class TagRow(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ImageTagRow(Base):
    __tablename__ = "image_tags"
    __table_args__ = (UniqueConstraint("image_id", "tag_id", name="uq_image_tags_image_tag"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    image_id = Column(String(36), ForeignKey("panorama_images.id"), nullable=False, index=True)
    tag_id = Column(String(36), ForeignKey("tags.id"), nullable=False, index=True)


class InstagramPostHistoryRow(Base):
    __tablename__ = "instagram_post_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    panorama_id = Column(String(36), nullable=False, index=True)
    caption = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="posted")
    instagram_post_id = Column(String(255), nullable=True)
    posted_by = Column(String(255), nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True, default=_now)
    result_payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class InstagramCredentialRow(Base):
    __tablename__ = "instagram_credentials"
    __table_args__ = (Index("instagram_credentials_expires_idx", "expires_at"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    access_token = Column(Text, nullable=True)
    token_hint = Column(String(64), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    instagram_business_account_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresher_note = Column(Text, nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)
