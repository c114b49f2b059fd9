# services/image_service/app/blob_repository.py
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from core.config import logger as core_logger
from core.database import Database, image_usages, image_variants, images
from core.errors import ImageValidationError, StorageError
from core.models import Blob, ImageMeta, ImageStats
from core.utils import as_utc, generate_image_id, split_file_name, suffixed_file_name, utc_now

logger = core_logger.getChild("ImageService").getChild("BlobRepository")

# Gives up on a name after this many numbered attempts
MAX_FILENAME_ATTEMPTS = 1000

UPDATABLE_FIELDS = {"file_name", "mime_type", "width", "height", "is_temporary", "expires_at"}

_META_COLUMNS = [c for c in images.c if c.name != "image_data"]


def _row_to_blob(row) -> Blob:
    data = dict(row._mapping)
    return Blob(
        id=data["id"],
        file_name=data["file_name"],
        file_type=data["file_type"],
        mime_type=data["mime_type"],
        file_size=data["file_size"],
        width=data.get("width"),
        height=data.get("height"),
        payload=data.get("image_data"),
        is_temporary=bool(data.get("is_temporary")),
        expires_at=as_utc(data.get("expires_at")),
        created_at=as_utc(data.get("created_at")),
        updated_at=as_utc(data.get("updated_at")),
    )


class BlobRepository:
    """
    Persists original image bytes and metadata in the 'images' table.

    Performs no validation and no reference counting; the lifecycle manager
    owns both. Every method joins the caller's transaction when a connection
    is passed in.
    """

    def __init__(self, db: Database):
        self.db = db

    def store(self, payload: bytes, meta: ImageMeta, conn: Optional[Connection] = None) -> str:
        """Inserts a blob and returns its id, renaming 'x.png' to 'x_1.png', 'x_2.png'... on collision."""
        blob_id = generate_image_id()
        _, file_type = split_file_name(meta.file_name, meta.mime_type)
        file_name = meta.file_name
        values = {
            "id": blob_id,
            "file_type": file_type,
            "mime_type": meta.mime_type,
            "file_size": len(payload),
            "width": meta.width,
            "height": meta.height,
            "image_data": payload,
            "is_temporary": meta.is_temporary,
            "expires_at": meta.expires_at,
            "created_at": utc_now(),
        }
        with self.db.scope(conn) as c:
            for counter in range(1, MAX_FILENAME_ATTEMPTS + 1):
                try:
                    # Savepoint so a collision does not poison the enclosing transaction
                    with c.begin_nested():
                        c.execute(images.insert().values(file_name=file_name, **values))
                    break
                except IntegrityError:
                    logger.debug(f"[{blob_id}] File name '{file_name}' ({file_type}) taken, retrying with suffix {counter}.")
                    file_name = suffixed_file_name(meta.file_name, counter)
            else:
                raise StorageError(f"No free file name for '{meta.file_name}' after {MAX_FILENAME_ATTEMPTS} attempts")
        logger.info(f"[{blob_id}] Stored '{file_name}' ({meta.mime_type}, {len(payload)} bytes, temporary={meta.is_temporary}).")
        return blob_id

    def get(self, blob_id: str, include_payload: bool = True, conn: Optional[Connection] = None) -> Optional[Blob]:
        columns = list(images.c) if include_payload else _META_COLUMNS
        with self.db.scope(conn) as c:
            row = c.execute(select(*columns).where(images.c.id == blob_id)).first()
        if row is None:
            logger.debug(f"[{blob_id}] Blob not found.")
            return None
        return _row_to_blob(row)

    def update_meta(self, blob_id: str, fields: Dict[str, Any], conn: Optional[Connection] = None) -> Optional[Blob]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ImageValidationError(f"Cannot update image field(s): {', '.join(sorted(unknown))}")
        values = dict(fields)
        if "file_name" in values:
            values["file_type"] = split_file_name(values["file_name"], values.get("mime_type"))[1]
        values["updated_at"] = utc_now()
        with self.db.scope(conn) as c:
            result = c.execute(update(images).where(images.c.id == blob_id).values(**values))
            if result.rowcount == 0:
                logger.warning(f"[{blob_id}] Metadata update matched no blob.")
                return None
            logger.info(f"[{blob_id}] Updated metadata fields: {', '.join(sorted(fields))}.")
            return self.get(blob_id, include_payload=False, conn=c)

    def mark_confirmed(self, blob_id: str, conn: Optional[Connection] = None) -> bool:
        """Clears the temporary flag once the blob is bound to an owner."""
        with self.db.scope(conn) as c:
            result = c.execute(
                update(images)
                .where(and_(images.c.id == blob_id, images.c.is_temporary.is_(True)))
                .values(is_temporary=False, expires_at=None, updated_at=utc_now())
            )
        return result.rowcount > 0

    def delete(self, blob_id: str, conn: Optional[Connection] = None) -> Optional[Blob]:
        """Unconditional row removal. Returns the deleted blob's metadata, or None if it was absent."""
        with self.db.scope(conn) as c:
            blob = self.get(blob_id, include_payload=False, conn=c)
            if blob is None:
                return None
            c.execute(delete(images).where(images.c.id == blob_id))
        logger.info(f"[{blob_id}] Deleted blob '{blob.file_name}'.")
        return blob

    def delete_unreferenced(self, blob_id: str, conn: Optional[Connection] = None) -> bool:
        """Deletes the blob only if no association references it, as a single statement."""
        referenced = exists().where(image_usages.c.image_id == blob_id)
        with self.db.scope(conn) as c:
            result = c.execute(delete(images).where(and_(images.c.id == blob_id, ~referenced)))
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"[{blob_id}] Deleted unreferenced blob.")
        return deleted

    def expired_temp_ids(self, now=None, conn: Optional[Connection] = None) -> List[str]:
        """Ids of temporary blobs whose expiry has passed, oldest first."""
        now = now or utc_now()
        with self.db.scope(conn) as c:
            rows = c.execute(
                select(images.c.id)
                .where(and_(images.c.is_temporary.is_(True), images.c.expires_at < now))
                .order_by(images.c.expires_at.asc())
            ).all()
        return [r.id for r in rows]

    def stats(self, conn: Optional[Connection] = None) -> ImageStats:
        now = utc_now()
        with self.db.scope(conn) as c:
            total, size, avg = c.execute(
                select(func.count(images.c.id), func.coalesce(func.sum(images.c.file_size), 0), func.avg(images.c.file_size))
            ).one()
            temporary = c.execute(select(func.count()).select_from(images).where(images.c.is_temporary.is_(True))).scalar_one()
            expired = c.execute(
                select(func.count()).select_from(images).where(and_(images.c.is_temporary.is_(True), images.c.expires_at < now))
            ).scalar_one()
            variants = c.execute(select(func.count()).select_from(image_variants)).scalar_one()
            usages = c.execute(select(func.count()).select_from(image_usages)).scalar_one()
        return ImageStats(
            total_images=total,
            total_size=int(size or 0),
            avg_size=float(avg or 0.0),
            temporary_images=temporary,
            expired_temporary_images=expired,
            total_variants=variants,
            total_associations=usages,
        )
