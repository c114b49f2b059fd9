# services/image_service/app/main.py
from fastapi import FastAPI, HTTPException, Depends, File, Query, Request, Response, UploadFile, status
from core.models import ConfirmRequest, ImageMeta, ServiceResponse, UnlinkRequest, UploadResult
from core.config import settings, logger as core_logger # Use core logger
from core.database import Database
from core.errors import (
    ImageInUseError, ImageNotFoundError, ImageValidationError, StorageError,
)
from pydantic import ValidationError
from .lifecycle import ImageLifecycleManager
from .variants import VariantGenerator, VariantTaskQueue, build_presets
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import quote

logger = core_logger.getChild("ImageService") # Child logger for this service

DEFAULT_UPLOAD_NAME = "upload"


# --- Lifespan: database, variant workers, lifecycle manager ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the storage stack on startup and tears it down on shutdown."""
    logger.info(f"Image Service starting (database: {settings.DATABASE_URL.split('@')[-1]}).")
    db = Database.from_settings(settings)
    db.create_all()

    generator = VariantGenerator(db, build_presets(settings.IMAGE_VARIANT_PRESETS))
    queue = VariantTaskQueue(
        generator,
        workers=settings.VARIANT_WORKERS,
        max_attempts=settings.VARIANT_MAX_ATTEMPTS,
        retry_delay=settings.VARIANT_RETRY_DELAY,
    )
    await queue.start()

    app.state.db = db
    app.state.variant_queue = queue
    app.state.lifecycle = ImageLifecycleManager.from_settings(db, settings, generator, queue=queue)
    logger.info("Image Service started.")

    yield # Application runs

    logger.info("Image Service shutting down. Draining variant queue...")
    await queue.stop()
    db.dispose()
    app.state.lifecycle = None
    logger.info("Image Service stopped.")

# --- FastAPI App Instance ---
app = FastAPI(
    title="Image Service",
    description="Stores uploaded images, derives renditions and binds images to gallery entities.",
    version="1.0.0",
    lifespan=lifespan
)

# --- Dependency: the lifecycle manager built in lifespan ---
async def get_lifecycle(request: Request) -> ImageLifecycleManager:
    lifecycle = getattr(request.app.state, "lifecycle", None)
    if lifecycle is None:
        logger.error("Lifecycle dependency not met: image store is not initialized.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal error: image store not ready"
        )
    return lifecycle

# --- Error mapping ---
def _http_error(e: Exception, context: str) -> HTTPException:
    """Maps image store errors onto HTTP status codes."""
    if isinstance(e, (ImageValidationError, ValidationError)):
        logger.warning(f"{context} rejected: {e}")
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, ImageNotFoundError):
        logger.info(f"{context}: {e}")
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ImageInUseError):
        logger.warning(f"{context} refused: {e}")
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, StorageError):
        logger.error(f"{context} failed on storage: {e}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image storage is temporarily unavailable. Please retry.",
            headers={"Retry-After": "5"},
        )
    logger.error(f"{context} failed unexpectedly: {e}", exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Image Service Error")


# --- Health Check ---
@app.get("/health", response_model=ServiceResponse, tags=["Meta"])
async def health_check(request: Request):
    lifecycle = getattr(request.app.state, "lifecycle", None)
    queue = getattr(request.app.state, "variant_queue", None)
    if lifecycle is None:
        return ServiceResponse(status="error", message="Image Service is running but storage is not initialized.")
    workers = "running" if queue is not None and queue.running else "stopped"
    return ServiceResponse(status="success", message=f"Image Service is running (variant workers: {workers}).")


# --- Upload ---
@app.post("/images/temp-upload", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED, tags=["Upload"])
async def temp_upload(image: UploadFile = File(...), lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Stores an image as a temporary upload. It must be confirmed before it expires."""
    file_name = image.filename or DEFAULT_UPLOAD_NAME
    mime_type = image.content_type or "application/octet-stream"
    logger.info(f"Received temp upload '{file_name}' ({mime_type}).")
    # At most one byte past the limit, enough for validation to reject it
    payload = await image.read(lifecycle.max_upload_bytes + 1)
    try:
        blob_id = await lifecycle.upload_temp(payload, ImageMeta(file_name=file_name, mime_type=mime_type))
        blob = await lifecycle.get_image(blob_id)
    except Exception as e:
        raise _http_error(e, f"Upload of '{file_name}'") from e

    result = UploadResult(
        blob_id=blob_id,
        size=blob.file_size,
        mime_type=blob.mime_type,
        file_name=blob.file_name,
        expires_at=blob.expires_at,
    )
    return ServiceResponse(status="success", data=result.model_dump(by_alias=True, mode="json"), message="Image uploaded")


@app.delete("/images/temp-upload", response_model=ServiceResponse, tags=["Upload"])
async def delete_temp_upload(image_id: str = Query(...), lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Discards a temporary upload that will not be confirmed."""
    try:
        deleted = await lifecycle.cleanup_orphan_temp(image_id)
    except Exception as e:
        raise _http_error(e, f"[{image_id}] Temp cleanup") from e
    message = "Temporary image deleted" if deleted else "Temporary image not found or still in use"
    return ServiceResponse(status="success", data={"deleted": deleted}, message=message)


@app.post("/images/cleanup", response_model=ServiceResponse, tags=["Upload"])
async def purge_expired(lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Deletes every expired temporary upload."""
    try:
        result = await lifecycle.purge_expired_temp()
    except Exception as e:
        raise _http_error(e, "Expired temp purge") from e
    return ServiceResponse(
        status="success",
        data=result.model_dump(mode="json"),
        message=f"Deleted {len(result.deleted_ids)} expired temporary image(s)",
    )


# --- Entity binding ---
@app.post("/images/confirm", response_model=ServiceResponse, tags=["Entities"])
async def confirm_image(payload: ConfirmRequest, lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Binds an uploaded image to an entity's slot, replacing the slot's previous image."""
    try:
        association = await lifecycle.confirm(
            payload.image_id, payload.entity_type, payload.entity_id,
            usage_type=payload.usage_type, is_primary=payload.is_primary,
        )
    except Exception as e:
        raise _http_error(e, f"[{payload.image_id}] Confirm") from e
    return ServiceResponse(status="success", data=association.model_dump(mode="json"), message="Image confirmed")


@app.post("/images/unlink", response_model=ServiceResponse, tags=["Entities"])
async def unlink_images(payload: UnlinkRequest, lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Removes an entity's image slot (or all of its images) and deletes blobs nothing else uses."""
    try:
        outcome = await lifecycle.delete_entity_image(
            payload.entity_type, payload.entity_id, payload.usage_type, force=payload.force
        )
    except Exception as e:
        raise _http_error(e, f"[{payload.entity_type}:{payload.entity_id}] Unlink") from e
    return ServiceResponse(
        status="success",
        data=outcome.model_dump(mode="json"),
        message=f"Unlinked {len(outcome.unlinked)} image(s), deleted {len(outcome.deleted_blob_ids)}",
    )


@app.get("/images/entity/{entity_type}/{entity_id}", response_model=ServiceResponse, tags=["Entities"])
async def list_entity_images(entity_type: str, entity_id: str, usage_type: Optional[str] = None,
                             lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    try:
        entries = await lifecycle.list_entity_images(entity_type, entity_id, usage_type)
    except Exception as e:
        raise _http_error(e, f"[{entity_type}:{entity_id}] List") from e
    return ServiceResponse(status="success", data=[entry.model_dump(mode="json") for entry in entries])


# --- Stats ---
@app.get("/images/stats", response_model=ServiceResponse, tags=["Meta"])
async def image_stats(lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    try:
        stats = await lifecycle.stats()
    except Exception as e:
        raise _http_error(e, "Stats") from e
    return ServiceResponse(status="success", data=stats.model_dump(mode="json"))


# --- Serving ---
@app.get("/images/{blob_id}", tags=["Serving"])
async def serve_image(blob_id: str, variant: Optional[str] = None, download: bool = False,
                      lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Streams a variant, falling back to the original while the variant is missing."""
    try:
        rendition = await lifecycle.get_rendition(blob_id, variant)
    except Exception as e:
        raise _http_error(e, f"[{blob_id}] Serve") from e
    if rendition is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Image not found: {blob_id}")

    disposition = "attachment" if download else "inline"
    headers = {
        "Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(rendition.file_name)}",
        "Cache-Control": "public, max-age=86400",
        "X-Image-Variant": rendition.variant_type,
    }
    return Response(content=rendition.payload, media_type=rendition.mime_type, headers=headers)


@app.post("/images/{blob_id}/variants", response_model=ServiceResponse, tags=["Serving"])
async def regenerate_variants(blob_id: str, variant_types: Optional[List[str]] = Query(None),
                              lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    """Re-renders the blob's variants now (all configured presets by default)."""
    try:
        result = await lifecycle.regenerate_variants(blob_id, variant_types)
    except Exception as e:
        raise _http_error(e, f"[{blob_id}] Regenerate variants") from e
    state = "success" if not result["failed"] else "error"
    return ServiceResponse(status=state, data=result, message=f"Generated {len(result['generated'])} variant(s)")


@app.delete("/images/{blob_id}", response_model=ServiceResponse, tags=["Serving"])
async def delete_image(blob_id: str, force: bool = False, lifecycle: ImageLifecycleManager = Depends(get_lifecycle)):
    try:
        deleted = await lifecycle.delete_image(blob_id, force=force)
    except Exception as e:
        raise _http_error(e, f"[{blob_id}] Delete") from e
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Image not found: {blob_id}")
    return ServiceResponse(status="success", data={"deleted": True}, message="Image deleted")
