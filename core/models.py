# core/models.py
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Any
import datetime

# --- Utility Functions ---

def slot_label(entity_type: str, entity_id: str, usage_type: Optional[str] = None) -> str:
    """Log prefix for an image slot, e.g. 'workflow:42/thumbnail'."""
    label = f"{entity_type}:{entity_id}"
    return f"{label}/{usage_type}" if usage_type else label

# --- Core Data Models ---

class ImageMeta(BaseModel):
    """Metadata supplied alongside an uploaded payload. Size is derived from the payload itself."""
    file_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., description="Declared content type, checked against the allow-list")
    width: Optional[int] = Field(None, description="Pixel width; None for vector images")
    height: Optional[int] = None
    is_temporary: bool = Field(default=False, description="True until the blob is confirmed into a slot")
    expires_at: Optional[datetime.datetime] = None

class Blob(BaseModel):
    """A stored original image."""
    id: str
    file_name: str
    file_type: str
    mime_type: str
    file_size: int
    width: Optional[int] = None
    height: Optional[int] = None
    payload: Optional[bytes] = Field(None, description="Raw bytes; None when loaded metadata-only")
    is_temporary: bool = False
    expires_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class Variant(BaseModel):
    """A derived rendition of a Blob at fixed dimensions/quality."""
    blob_id: str
    variant_type: str
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    quality: Optional[int] = None
    file_size: int
    payload: bytes
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class Association(BaseModel):
    """Binds a Blob to one owning entity's named image slot."""
    blob_id: str
    entity_type: str
    entity_id: str
    usage_type: str
    is_primary: bool = False
    sort_order: int = 0
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class VariantPreset(BaseModel):
    """Target box and JPEG quality for one named variant."""
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    quality: int = Field(default=85, ge=1, le=100)

class Rendition(BaseModel):
    """What the serving endpoint streams: a variant, or the original when the variant is missing."""
    blob_id: str
    variant_type: str = Field(description="Variant name, or 'original' for the raw blob")
    file_name: str
    mime_type: str
    file_size: int
    payload: bytes

class EntityImage(BaseModel):
    """One entry of an entity's image list: the association plus blob metadata."""
    id: str
    file_name: str
    mime_type: str
    file_size: int
    width: Optional[int] = None
    height: Optional[int] = None
    usage_type: str
    is_primary: bool
    sort_order: int = 0
    created_at: Optional[datetime.datetime] = None
    url: str
    thumbnail_url: str

class DeleteOutcome(BaseModel):
    """Result of removing an entity's image(s)."""
    unlinked: List[Association] = Field(default_factory=list)
    deleted_blob_ids: List[str] = Field(default_factory=list)
    retained_blob_ids: List[str] = Field(default_factory=list, description="Blobs kept because other associations still use them")

class TempCleanupResult(BaseModel):
    """Result of purging expired temporary uploads."""
    total_expired: int = 0
    deleted_ids: List[str] = Field(default_factory=list)
    retained_ids: List[str] = Field(default_factory=list)

class ImageStats(BaseModel):
    total_images: int = 0
    total_size: int = 0
    avg_size: float = 0.0
    temporary_images: int = 0
    expired_temporary_images: int = 0
    total_variants: int = 0
    total_associations: int = 0


# --- Service Request/Response Models ---

class UploadResult(BaseModel):
    """Returned by the upload endpoint."""
    blob_id: str = Field(..., alias="blobId")
    size: int
    mime_type: str = Field(..., alias="mimeType")
    file_name: str = Field(..., alias="fileName")
    expires_at: Optional[datetime.datetime] = Field(None, alias="expiresAt")

    class Config:
        populate_by_name = True

class ConfirmRequest(BaseModel):
    """Sent by the entity CRUD layer once the owning record is persisted."""
    image_id: str
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1, max_length=64)
    usage_type: str = Field(default="thumbnail", min_length=1, max_length=50)
    is_primary: bool = True

    @field_validator("entity_id", mode="before")
    @classmethod
    def coerce_entity_id(cls, value):
        # The gallery uses integer primary keys; slots are keyed by their string form
        return str(value) if isinstance(value, int) else value

class UnlinkRequest(BaseModel):
    """Sent when an owning record (or one of its slots) is deleted."""
    entity_type: str
    entity_id: str
    usage_type: Optional[str] = Field(None, description="Omit to remove every image of the entity")
    force: bool = False

    @field_validator("entity_id", mode="before")
    @classmethod
    def coerce_entity_id(cls, value):
        return str(value) if isinstance(value, int) else value

class ServiceResponse(BaseModel):
    """Standard response wrapper for the image service."""
    status: str = Field(description="'success' or 'error'")
    data: Any | None = Field(default=None, description="The primary data payload (depends on the endpoint)")
    message: Optional[str] = Field(default=None, description="Optional status message or error details")
