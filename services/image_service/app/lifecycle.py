# services/image_service/app/lifecycle.py
import asyncio
import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.engine import Connection

from core.config import Settings, logger as core_logger
from core.database import Database
from core.errors import ImageInUseError, ImageNotFoundError, ImageValidationError, VariantGenerationError
from core.models import (
    Association, Blob, DeleteOutcome, EntityImage, ImageMeta, ImageStats, Rendition,
    TempCleanupResult, Variant, slot_label,
)
from core.utils import extension_for_mime, split_file_name, utc_now
from . import processing
from .associations import AssociationManager
from .blob_repository import BlobRepository
from .variants import VariantGenerator, VariantTaskQueue

logger = core_logger.getChild("ImageService").getChild("Lifecycle")

ORIGINAL = "original"


class ImageLifecycleManager:
    """
    Orchestrates the image lifecycle: Temp (uploaded) -> Bound (confirmed) -> Deleted.

    Every multi-step operation runs as one transaction in a worker thread, so a
    failure at any step rolls the whole operation back. Variant generation is the
    only work that happens outside those transactions.
    """

    def __init__(self, db: Database, blobs: BlobRepository, variants: VariantGenerator,
                 associations: AssociationManager, queue: Optional[VariantTaskQueue] = None,
                 max_upload_bytes: int = 5 * 1024 * 1024, allowed_mime_types: Iterable[str] = (),
                 temp_ttl_hours: int = 24):
        self.db = db
        self.blobs = blobs
        self.variants = variants
        self.associations = associations
        self.queue = queue
        self.max_upload_bytes = max_upload_bytes
        self.allowed_mime_types = list(allowed_mime_types)
        self.temp_ttl = datetime.timedelta(hours=temp_ttl_hours)

    @classmethod
    def from_settings(cls, db: Database, settings: Settings, generator: VariantGenerator,
                      queue: Optional[VariantTaskQueue] = None) -> "ImageLifecycleManager":
        return cls(
            db,
            BlobRepository(db),
            generator,
            AssociationManager(db),
            queue=queue,
            max_upload_bytes=settings.IMAGE_MAX_UPLOAD_BYTES,
            allowed_mime_types=settings.IMAGE_ALLOWED_MIME_TYPES,
            temp_ttl_hours=settings.TEMP_IMAGE_TTL_HOURS,
        )

    # --- Upload ---

    async def upload_temp(self, payload: bytes, meta: ImageMeta) -> str:
        """Validates and stores a temporary blob, then queues its variants. Returns the blob id."""
        processing.validate_upload(payload, meta.mime_type, self.max_upload_bytes, self.allowed_mime_types)
        width, height = await asyncio.to_thread(processing.probe_dimensions, payload, meta.mime_type)

        temp_meta = meta.model_copy(update={
            "width": width,
            "height": height,
            "is_temporary": True,
            "expires_at": utc_now() + self.temp_ttl,
        })
        blob_id = await asyncio.to_thread(self.blobs.store, payload, temp_meta)
        logger.info(f"[{blob_id}] Temporary upload stored ({len(payload)} bytes, {width}x{height}), expires {temp_meta.expires_at.isoformat()}.")

        if self.queue is not None:
            self.queue.submit(blob_id)
        return blob_id

    # --- Confirm ---

    async def confirm(self, blob_id: str, entity_type: str, entity_id: str,
                      usage_type: str = "thumbnail", is_primary: bool = True) -> Association:
        """
        Binds a blob to the entity's slot, replacing whatever the slot held before.
        Superseded blobs that nothing else references are deleted in the same transaction.
        """
        return await asyncio.to_thread(self._confirm_tx, blob_id, entity_type, entity_id, usage_type, is_primary)

    def _confirm_tx(self, blob_id: str, entity_type: str, entity_id: str, usage_type: str, is_primary: bool) -> Association:
        slot = slot_label(entity_type, entity_id, usage_type)
        with self.db.transaction() as conn:
            blob = self.blobs.get(blob_id, include_payload=False, conn=conn)
            if blob is None:
                raise ImageNotFoundError(blob_id)
            if blob.is_temporary and blob.expires_at is not None and blob.expires_at <= utc_now():
                raise ImageValidationError(f"Temporary image {blob_id} expired at {blob.expires_at.isoformat()}")

            if not is_primary:
                held = [a for a in self.associations.list_by_blob(blob_id, conn=conn)
                        if (a.entity_type, a.entity_id, a.usage_type) == (entity_type, entity_id, usage_type)]
                if held:
                    # Already in the slot; a blob never occupies both of its rows
                    self.blobs.mark_confirmed(blob_id, conn=conn)
                    logger.info(f"[{slot}] Blob {blob_id} already bound (primary={held[0].is_primary}), nothing to replace.")
                    return held[0]

            # A primary confirm replaces the whole slot; a secondary one only the secondary row
            superseded = self.associations.unlink_all(
                entity_type, entity_id, usage_type, is_primary=None if is_primary else False, conn=conn
            )
            for old_id in dict.fromkeys(a.blob_id for a in superseded):
                if old_id == blob_id:
                    continue
                if self.blobs.delete_unreferenced(old_id, conn=conn):
                    logger.info(f"[{slot}] Superseded blob {old_id} deleted.")
                else:
                    logger.info(f"[{slot}] Superseded blob {old_id} retained, still referenced elsewhere.")

            association = self.associations.link(blob_id, entity_type, entity_id, usage_type, is_primary=is_primary, conn=conn)
            self.blobs.mark_confirmed(blob_id, conn=conn)
        logger.info(f"[{slot}] Confirmed blob {blob_id} (was temporary={blob.is_temporary}).")
        return association

    # --- Delete ---

    def _release(self, conn: Connection, blob_id: str, force: bool) -> bool:
        """Physically deletes the blob if forced or unreferenced. Returns whether it was deleted."""
        if force:
            self.associations.remove_for_blob(blob_id, conn=conn)
            self.variants.delete_for_blob(blob_id, conn=conn)
            return self.blobs.delete(blob_id, conn=conn) is not None
        return self.blobs.delete_unreferenced(blob_id, conn=conn)

    async def delete_entity_image(self, entity_type: str, entity_id: str, usage_type: Optional[str] = None,
                                  force: bool = False) -> DeleteOutcome:
        """
        Unlinks the slot (every slot of the entity when usage_type is None) and deletes
        each released blob whose reference count dropped to zero. force deletes the
        blobs even if other entities still use them.
        """
        return await asyncio.to_thread(self._delete_entity_image_tx, entity_type, entity_id, usage_type, force)

    def _delete_entity_image_tx(self, entity_type: str, entity_id: str, usage_type: Optional[str], force: bool) -> DeleteOutcome:
        slot = slot_label(entity_type, entity_id, usage_type)
        outcome = DeleteOutcome()
        with self.db.transaction() as conn:
            outcome.unlinked = self.associations.unlink_all(entity_type, entity_id, usage_type, conn=conn)
            for blob_id in dict.fromkeys(a.blob_id for a in outcome.unlinked):
                if self._release(conn, blob_id, force):
                    outcome.deleted_blob_ids.append(blob_id)
                else:
                    outcome.retained_blob_ids.append(blob_id)
        if not outcome.unlinked:
            logger.info(f"[{slot}] Nothing to delete, slot is empty.")
        else:
            logger.info(f"[{slot}] Unlinked {len(outcome.unlinked)}; deleted {outcome.deleted_blob_ids}; retained {outcome.retained_blob_ids} (force={force}).")
        return outcome

    async def delete_entity_images(self, entity_type: str, entity_id: str, force: bool = False) -> DeleteOutcome:
        """Entity deletion: releases every image slot the entity owns."""
        return await self.delete_entity_image(entity_type, entity_id, None, force=force)

    async def delete_image(self, blob_id: str, force: bool = False) -> bool:
        """Deletes a blob by id. Refused with ImageInUseError while referenced, unless forced."""
        return await asyncio.to_thread(self._delete_image_tx, blob_id, force)

    def _delete_image_tx(self, blob_id: str, force: bool) -> bool:
        with self.db.transaction() as conn:
            if self.blobs.get(blob_id, include_payload=False, conn=conn) is None:
                return False
            references = self.associations.reference_count(blob_id, conn=conn)
            if references and not force:
                raise ImageInUseError(blob_id, references)
            deleted = self._release(conn, blob_id, force)
        if references:
            logger.warning(f"[{blob_id}] Force-deleted while referenced by {references} association(s).")
        return deleted

    # --- Temp cleanup ---

    async def cleanup_orphan_temp(self, blob_id: str) -> bool:
        """
        Deletes a temporary upload that was never confirmed (e.g. the form was abandoned).
        Returns False when the blob is absent or still referenced.
        """
        return await asyncio.to_thread(self._cleanup_orphan_temp_tx, blob_id)

    def _cleanup_orphan_temp_tx(self, blob_id: str) -> bool:
        with self.db.transaction() as conn:
            blob = self.blobs.get(blob_id, include_payload=False, conn=conn)
            if blob is None:
                logger.info(f"[{blob_id}] Temp cleanup: blob already gone.")
                return False
            if not blob.is_temporary:
                raise ImageValidationError(f"Image {blob_id} is not a temporary upload")
            deleted = self.blobs.delete_unreferenced(blob_id, conn=conn)
        if not deleted:
            logger.warning(f"[{blob_id}] Temp cleanup skipped, blob is referenced.")
        return deleted

    async def purge_expired_temp(self) -> TempCleanupResult:
        """Deletes every temporary upload whose expiry has passed."""
        return await asyncio.to_thread(self._purge_expired_temp_tx)

    def _purge_expired_temp_tx(self) -> TempCleanupResult:
        with self.db.transaction() as conn:
            expired = self.blobs.expired_temp_ids(conn=conn)
            result = TempCleanupResult(total_expired=len(expired))
            for blob_id in expired:
                if self.blobs.delete_unreferenced(blob_id, conn=conn):
                    result.deleted_ids.append(blob_id)
                else:
                    result.retained_ids.append(blob_id)
        logger.info(f"Expired temp purge: {len(result.deleted_ids)} of {result.total_expired} deleted.")
        return result

    # --- Reads ---

    async def get_image(self, blob_id: str, include_payload: bool = False) -> Optional[Blob]:
        return await asyncio.to_thread(self.blobs.get, blob_id, include_payload)

    async def get_variant(self, blob_id: str, variant_type: str) -> Optional[Variant]:
        return await asyncio.to_thread(self.variants.get_variant, blob_id, variant_type)

    async def get_rendition(self, blob_id: str, variant_type: Optional[str] = None) -> Optional[Rendition]:
        """
        What the serving endpoint streams: the named variant, or the original when the
        variant is unknown or not generated yet. None only when the blob itself is absent.
        A configured variant that is missing gets queued for generation.
        """
        rendition = await asyncio.to_thread(self._get_rendition_tx, blob_id, variant_type)
        if (rendition is not None and rendition.variant_type == ORIGINAL and self.queue is not None
                and variant_type in self.variants.presets):
            self.queue.submit(blob_id, [variant_type])
        return rendition

    def _get_rendition_tx(self, blob_id: str, variant_type: Optional[str]) -> Optional[Rendition]:
        with self.db.transaction() as conn:
            if variant_type and variant_type != ORIGINAL:
                variant = self.variants.get_variant(blob_id, variant_type, conn=conn)
                if variant is not None:
                    blob = self.blobs.get(blob_id, include_payload=False, conn=conn)
                    stem, _ = split_file_name(blob.file_name) if blob else (blob_id, None)
                    return Rendition(
                        blob_id=blob_id,
                        variant_type=variant_type,
                        file_name=f"{stem}_{variant_type}.{extension_for_mime(variant.mime_type)}",
                        mime_type=variant.mime_type,
                        file_size=variant.file_size,
                        payload=variant.payload,
                    )
                logger.debug(f"[{blob_id}] Variant '{variant_type}' not available, serving original.")
            blob = self.blobs.get(blob_id, include_payload=True, conn=conn)
        if blob is None:
            return None
        return Rendition(
            blob_id=blob_id,
            variant_type=ORIGINAL,
            file_name=blob.file_name,
            mime_type=blob.mime_type,
            file_size=blob.file_size,
            payload=blob.payload,
        )

    async def list_entity_images(self, entity_type: str, entity_id: str, usage_type: Optional[str] = None) -> List[EntityImage]:
        return await asyncio.to_thread(self._list_entity_images_tx, entity_type, entity_id, usage_type)

    def _list_entity_images_tx(self, entity_type: str, entity_id: str, usage_type: Optional[str]) -> List[EntityImage]:
        results: List[EntityImage] = []
        with self.db.transaction() as conn:
            for assoc in self.associations.list_by_entity(entity_type, entity_id, conn=conn):
                if usage_type is not None and assoc.usage_type != usage_type:
                    continue
                blob = self.blobs.get(assoc.blob_id, include_payload=False, conn=conn)
                if blob is None:
                    continue
                results.append(EntityImage(
                    id=blob.id,
                    file_name=blob.file_name,
                    mime_type=blob.mime_type,
                    file_size=blob.file_size,
                    width=blob.width,
                    height=blob.height,
                    usage_type=assoc.usage_type,
                    is_primary=assoc.is_primary,
                    sort_order=assoc.sort_order,
                    created_at=blob.created_at,
                    url=f"/images/{blob.id}",
                    thumbnail_url=f"/images/{blob.id}?variant=thumbnail",
                ))
        return results

    async def regenerate_variants(self, blob_id: str, variant_types: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
        """
        Re-renders variants synchronously. Returns {'generated': [...], 'failed': [...]}.
        Raises ImageNotFoundError for an unknown blob and ImageValidationError for an unknown preset.
        """
        types = list(variant_types) if variant_types else self.variants.variant_types
        for variant_type in types:
            self.variants.preset_for(variant_type)

        generated: List[str] = []
        failed: List[str] = []
        for variant_type in types:
            try:
                await asyncio.to_thread(self.variants.ensure_variant, blob_id, variant_type)
                generated.append(variant_type)
            except VariantGenerationError as e:
                logger.error(f"[{blob_id}] {e}")
                failed.append(variant_type)
        return {"generated": generated, "failed": failed}

    async def stats(self) -> ImageStats:
        return await asyncio.to_thread(self.blobs.stats)
