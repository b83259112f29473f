import os
import time
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from panostudio.config import Settings, logger
from panostudio.dependencies import get_current_user, get_repository, get_settings, get_storage
from panostudio.models import PanelsRequest, PanoramaCreate, PanoramaSave, PanoramaUpdate
from panostudio.repository import DEFAULT_PAGE_SIZE, PanoramaNotFound, PanoramaRepository
from panostudio.services.image_processor import image_size, make_preview, make_thumbnail
from panostudio.services.storage import StorageService
from panostudio.tags import normalize_slug

router = APIRouter()

# Fields a partial update may explicitly clear
NULLABLE_FIELDS = {
    "processed_url", "thumbnail_url", "preview_url", "panel_count",
    "latitude", "longitude", "date_taken", "adjustments",
}


def _dump(record) -> dict:
    return record.model_dump(mode="json")


@router.get("")
def list_images(
    url: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    archived: bool = False,
    repository: PanoramaRepository = Depends(get_repository),
):
    """
    One record by ``url``, a page when ``limit``/``offset``/``archived`` is
    given, otherwise every non-archived record.
    """
    if url:
        record = repository.get_by_url(url)
        if record is None:
            raise HTTPException(status_code=404, detail="Image not found")
        return _dump(record)

    page_limit = DEFAULT_PAGE_SIZE if limit is None else limit
    page_offset = 0 if offset is None else offset
    if archived:
        return repository.list_archived_page(page_limit, page_offset).as_response()
    if limit is not None or offset is not None:
        return repository.list_active_page(page_limit, page_offset).as_response()
    return {"images": [_dump(record) for record in repository.list_active()]}


@router.get("/latest")
def latest_image(
    include_panels: bool = Query(False, alias="includePanels"),
    repository: PanoramaRepository = Depends(get_repository),
):
    record = repository.get_latest(include_panels=include_panels)
    if record is None:
        raise HTTPException(status_code=404, detail="No panoramas found")
    return _dump(record)


@router.post("/upload", status_code=201)
def upload_image(
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """
    Store an uploaded panorama in the raw bucket and derive its web preview
    and thumbnail into the optimized bucket.
    """
    data = file.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    width, height = image_size(data)
    preview = make_preview(data)
    thumbnail = make_thumbnail(data)

    stem, ext = os.path.splitext(os.path.basename(file.filename or ""))
    name = f"{int(time.time())}-{uuid.uuid4().hex[:8]}-{normalize_slug(stem) or 'panorama'}"
    logger.info(f"Uploading panorama {name} ({width}x{height}) for {user_id}")

    original_url = storage.upload(
        settings.bucket_raw, f"{user_id}/{name}{ext.lower() or '.jpg'}", data,
        content_type=file.content_type or "image/jpeg",
    )
    preview_url = storage.upload(settings.bucket_optimized, f"{user_id}/{name}-preview.jpg", preview)
    thumbnail_url = storage.upload(settings.bucket_optimized, f"{user_id}/{name}-thumb.jpg", thumbnail)

    return {
        "original_url": original_url,
        "preview_url": preview_url,
        "thumbnail_url": thumbnail_url,
        "width": width,
        "height": height,
    }


@router.post("", status_code=201)
def create_image(
    body: PanoramaCreate,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    record = repository.save(PanoramaSave(**body.model_dump()), user_id)
    if record is None:
        raise HTTPException(status_code=500, detail="Failed to save image metadata")
    return _dump(record)


@router.get("/{image_id}")
def get_image(
    image_id: str,
    include_panels: bool = Query(False, alias="includePanels"),
    repository: PanoramaRepository = Depends(get_repository),
):
    record = repository.get_by_id(image_id, include_panels=include_panels)
    if record is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return _dump(record)


@router.put("/{image_id}")
def update_image(
    image_id: str,
    body: PanoramaUpdate,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    existing = repository.get_by_id(image_id)
    if existing is None:
        raise PanoramaNotFound(image_id)

    changes = {
        field: value for field, value in body.model_dump(exclude_unset=True).items()
        if value is not None or field in NULLABLE_FIELDS
    }
    if "original_url" in changes and not changes["original_url"].strip():
        raise HTTPException(status_code=400, detail="original_url cannot be empty")

    merged = existing.model_dump(exclude={"id", "user_id", "tags", "panels", "created_at", "updated_at",
                                          "posted_at", "archived_at", "instagram_post_id"})
    merged.update(changes)
    record = repository.save(PanoramaSave(id=image_id, **merged), user_id)
    if record is None:
        raise HTTPException(status_code=500, detail="Failed to update image metadata")
    return _dump(record)


@router.post("/{image_id}/archive")
def archive_image(
    image_id: str,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    if not repository.archive(image_id):
        if repository.get_by_id(image_id) is None:
            raise PanoramaNotFound(image_id)
        raise HTTPException(status_code=500, detail="Failed to archive image")
    logger.info(f"Image {image_id} archived by {user_id}")
    return _dump(repository.get_by_id(image_id))


@router.post("/{image_id}/restore")
def restore_image(
    image_id: str,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    if not repository.restore(image_id):
        if repository.get_by_id(image_id) is None:
            raise PanoramaNotFound(image_id)
        raise HTTPException(status_code=500, detail="Failed to restore image")
    logger.info(f"Image {image_id} restored by {user_id}")
    return _dump(repository.get_by_id(image_id))


@router.delete("/{image_id}")
def delete_image(
    image_id: str,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    """Soft delete (archive) or permanent delete, depending on ``DELETE_MODE``."""
    if repository.get_by_id(image_id) is None:
        raise PanoramaNotFound(image_id)

    if settings.delete_mode == "hard":
        deleted = repository.hard_delete(image_id)
    else:
        deleted = repository.archive(image_id)
    if not deleted:
        raise HTTPException(status_code=500, detail="Failed to delete image")
    logger.info(f"Image {image_id} deleted ({settings.delete_mode}) by {user_id}")
    return {"success": True, "mode": settings.delete_mode}


@router.get("/{image_id}/panels")
def get_panels(image_id: str, repository: PanoramaRepository = Depends(get_repository)):
    if repository.get_by_id(image_id) is None:
        raise PanoramaNotFound(image_id)
    return {"panels": [_dump(panel) for panel in repository.get_panels(image_id)]}


@router.put("/{image_id}/panels")
def replace_panels(
    image_id: str,
    body: PanelsRequest,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    panels = repository.replace_panels(image_id, body.panels)
    logger.info(f"{len(panels)} panels saved for image {image_id} by {user_id}")
    return {"panels": [_dump(panel) for panel in panels]}


@router.get("/{image_id}/instagram-history")
def instagram_history(
    image_id: str,
    user_id: str = Depends(get_current_user),
    repository: PanoramaRepository = Depends(get_repository),
):
    if repository.get_by_id(image_id) is None:
        raise PanoramaNotFound(image_id)
    return {"history": repository.list_post_history(image_id)}
