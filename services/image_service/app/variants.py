# services/image_service/app/variants.py
import asyncio
from typing import Dict, Iterable, List, NamedTuple, Optional

from PIL import Image, UnidentifiedImageError
from sqlalchemy import and_, delete, select
from sqlalchemy.engine import Connection

from core.config import logger as core_logger
from core.database import Database, dialect_insert, image_variants, images
from core.errors import ImageNotFoundError, ImageStoreError, ImageValidationError, VariantGenerationError
from core.models import Variant, VariantPreset
from core.utils import as_utc, utc_now
from . import processing

logger = core_logger.getChild("ImageService").getChild("Variants")


def _row_to_variant(row) -> Variant:
    data = row._mapping
    return Variant(
        blob_id=data["image_id"],
        variant_type=data["variant_type"],
        mime_type=data["mime_type"],
        width=data["width"],
        height=data["height"],
        quality=data["quality"],
        file_size=data["file_size"],
        payload=data["image_data"],
        created_at=as_utc(data["created_at"]),
    )


def build_presets(raw: Dict[str, Dict[str, int]]) -> Dict[str, VariantPreset]:
    """Parses the IMAGE_VARIANT_PRESETS setting."""
    return {name: VariantPreset(**values) for name, values in raw.items()}


class VariantGenerator:
    """
    Derives fixed-size renditions of stored blobs into 'image_variants'.

    ensure_variant() is an upsert keyed by (image_id, variant_type), so running it
    twice for the same pair leaves one row holding the latest rendition. Rendering
    happens between two short transactions, never while a connection is held.
    """

    def __init__(self, db: Database, presets: Dict[str, VariantPreset]):
        self.db = db
        self.presets = presets

    @property
    def variant_types(self) -> List[str]:
        return list(self.presets)

    def preset_for(self, variant_type: str) -> VariantPreset:
        preset = self.presets.get(variant_type)
        if preset is None:
            raise ImageValidationError(f"Unknown variant type '{variant_type}'. Configured: {', '.join(self.presets) or 'none'}")
        return preset

    def ensure_variant(self, blob_id: str, variant_type: str, preset: Optional[VariantPreset] = None,
                       conn: Optional[Connection] = None) -> Variant:
        preset = preset or self.preset_for(variant_type)

        with self.db.scope(conn) as c:
            source = c.execute(
                select(images.c.image_data, images.c.mime_type).where(images.c.id == blob_id)
            ).first()
        if source is None:
            raise ImageNotFoundError(blob_id)

        try:
            payload, mime_type = processing.render_variant(source.image_data, source.mime_type, preset)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise VariantGenerationError(blob_id, variant_type, str(e)) from e

        passthrough = processing.is_vector(source.mime_type)
        values = {
            "image_id": blob_id,
            "variant_type": variant_type,
            "mime_type": mime_type,
            "width": None if passthrough else preset.width,
            "height": None if passthrough else preset.height,
            "quality": None if passthrough else processing.clamp_quality(preset.quality),
            "file_size": len(payload),
            "image_data": payload,
            "created_at": utc_now(),
        }
        with self.db.scope(conn) as c:
            stmt = dialect_insert(c, image_variants).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["image_id", "variant_type"],
                set_={k: stmt.excluded[k] for k in values if k not in ("image_id", "variant_type")},
            )
            c.execute(stmt)
        logger.info(f"[{blob_id}] Variant '{variant_type}' stored ({mime_type}, {len(payload)} bytes{', passthrough' if passthrough else ''}).")
        return Variant(
            blob_id=blob_id,
            variant_type=variant_type,
            mime_type=mime_type,
            width=values["width"],
            height=values["height"],
            quality=values["quality"],
            file_size=len(payload),
            payload=payload,
            created_at=values["created_at"],
        )

    def get_variant(self, blob_id: str, variant_type: str, conn: Optional[Connection] = None) -> Optional[Variant]:
        with self.db.scope(conn) as c:
            row = c.execute(
                select(image_variants).where(and_(image_variants.c.image_id == blob_id, image_variants.c.variant_type == variant_type))
            ).first()
        return _row_to_variant(row) if row is not None else None

    def list_variant_types(self, blob_id: str, conn: Optional[Connection] = None) -> List[str]:
        with self.db.scope(conn) as c:
            rows = c.execute(select(image_variants.c.variant_type).where(image_variants.c.image_id == blob_id)).all()
        return sorted(r.variant_type for r in rows)

    def delete_for_blob(self, blob_id: str, conn: Optional[Connection] = None) -> int:
        with self.db.scope(conn) as c:
            result = c.execute(delete(image_variants).where(image_variants.c.image_id == blob_id))
        return result.rowcount


class VariantJob(NamedTuple):
    blob_id: str
    variant_type: str
    attempt: int = 1


class VariantTaskQueue:
    """
    Background variant generation: a fixed pool of asyncio workers draining a queue.

    Each job is retried with linear backoff until max_attempts, then logged as a
    partial failure and dropped. Jobs for blobs that no longer exist are dropped
    at once. Nothing here ever propagates into the upload that submitted the job.
    """

    def __init__(self, generator: VariantGenerator, workers: int = 2, max_attempts: int = 3, retry_delay: float = 0.5):
        self.generator = generator
        self.worker_count = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker(i), name=f"variant-worker-{i}") for i in range(self.worker_count)]
        logger.info(f"Variant task queue started with {self.worker_count} worker(s).")

    def submit(self, blob_id: str, variant_types: Optional[Iterable[str]] = None) -> int:
        """Enqueues one job per variant type (default: every preset) and returns the number queued."""
        types = list(variant_types) if variant_types is not None else self.generator.variant_types
        for variant_type in types:
            self.queue.put_nowait(VariantJob(blob_id, variant_type))
        if types:
            logger.debug(f"[{blob_id}] Queued variant job(s): {', '.join(types)}")
        return len(types)

    async def join(self) -> None:
        """Waits until every queued job, retries included, has finished."""
        await self.queue.join()

    async def stop(self) -> None:
        if not self._workers:
            return
        await self.queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"Variant task queue stopped ({self.completed} completed, {self.failed} failed).")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self._run(job)
            finally:
                self.queue.task_done()

    async def _run(self, job: VariantJob) -> None:
        prefix = f"[{job.blob_id}]"
        try:
            await asyncio.to_thread(self.generator.ensure_variant, job.blob_id, job.variant_type)
            self.completed += 1
            return
        except ImageNotFoundError:
            logger.warning(f"{prefix} Blob gone before variant '{job.variant_type}' was generated. Dropping job.")
            return
        except ImageValidationError as e:
            # Unknown preset: retrying cannot help
            logger.error(f"{prefix} Variant job rejected: {e}")
            self.failed += 1
            return
        except ImageStoreError as e:
            error = e
        except Exception as e:
            logger.error(f"{prefix} Unexpected error generating variant '{job.variant_type}': {e}", exc_info=True)
            error = e

        if job.attempt >= self.max_attempts:
            self.failed += 1
            failure = error if isinstance(error, VariantGenerationError) else VariantGenerationError(job.blob_id, job.variant_type, str(error))
            logger.error(f"{prefix} Partial failure after {job.attempt} attempt(s): {failure}")
            return

        logger.warning(f"{prefix} Variant '{job.variant_type}' attempt {job.attempt}/{self.max_attempts} failed: {error}. Retrying.")
        await asyncio.sleep(self.retry_delay * job.attempt)
        # Requeued before this job's task_done so join() keeps waiting for the retry
        self.queue.put_nowait(job._replace(attempt=job.attempt + 1))
