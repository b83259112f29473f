from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from panostudio.lifecycle import PanoramaStatus


class PanoramaPanel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    panorama_image_id: str
    panel_order: int
    panel_url: str
    created_at: Optional[datetime] = None


class PanoramaFields(BaseModel):
    original_url: str
    processed_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None
    panel_count: Optional[int] = None
    title: str = ""
    location_name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: str = ""
    date_taken: Optional[date] = None
    status: PanoramaStatus = PanoramaStatus.DRAFT
    adjustments: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


class PanoramaSave(PanoramaFields):
    """Full record handed to the repository; an empty ``id`` means insert."""
    id: Optional[str] = None


class PanoramaCreate(PanoramaFields):

    @field_validator("original_url")
    @classmethod
    def original_url_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("original_url is required")
        return v.strip()


class PanoramaUpdate(BaseModel):
    original_url: Optional[str] = None
    processed_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None
    panel_count: Optional[int] = None
    title: Optional[str] = None
    location_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None
    date_taken: Optional[date] = None
    status: Optional[PanoramaStatus] = None
    adjustments: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


class PanoramaImage(PanoramaFields):
    id: str
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    instagram_post_id: Optional[str] = None
    tags: List[str] = []
    panels: Optional[List[PanoramaPanel]] = None


class ImagesPage(BaseModel):
    images: List[PanoramaImage]
    # page length == limit; reports True on an exactly-full last page
    has_more: bool

    def as_response(self) -> Dict[str, Any]:
        return {
            "images": [img.model_dump(mode="json", exclude_none=False) for img in self.images],
            "hasMore": self.has_more,
        }


class PanelIn(BaseModel):
    panel_order: int = Field(ge=1)
    panel_url: str = Field(min_length=1)


class PanelsRequest(BaseModel):
    panels: List[PanelIn]

    @field_validator("panels")
    @classmethod
    def orders_dense(cls, v: List[PanelIn]) -> List[PanelIn]:
        orders = sorted(p.panel_order for p in v)
        if orders != list(range(1, len(v) + 1)):
            raise ValueError("panel_order values must be 1..n without gaps or duplicates")
        return sorted(v, key=lambda p: p.panel_order)


class InstagramPostRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_id: str = Field(alias="imageId", min_length=1)
    caption: Optional[str] = None


class PublishResult(BaseModel):
    success: bool
    post_id: Optional[str] = None
    error: Optional[str] = None

    def as_response(self) -> Dict[str, Any]:
        return {"success": self.success, "postId": self.post_id, "error": self.error}


class TokenInfo(BaseModel):
    access_token: str
    source: str  # "stored" | "environment"
    expires_at: Optional[datetime] = None
    days_until_expiration: Optional[int] = None
    is_expiring_soon: bool = False


class RefreshResult(BaseModel):
    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class TokenRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    import_from_env: bool = Field(default=False, alias="importFromEnv")


class CredentialMetadataRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_hint: str = Field(alias="tokenHint", min_length=1)
    expires_at: datetime = Field(alias="expiresAt")
    instagram_business_account_id: Optional[str] = Field(default=None, alias="instagramBusinessAccountId")
    notes: Optional[str] = None


class TokenVerifyRequest(BaseModel):
    token: str = Field(min_length=1)
