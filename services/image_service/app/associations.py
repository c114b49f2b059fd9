# services/image_service/app/associations.py
from typing import List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.engine import Connection

from core.config import logger as core_logger
from core.database import Database, dialect_insert, image_usages, images
from core.models import Association, slot_label
from core.utils import as_utc, utc_now

logger = core_logger.getChild("ImageService").getChild("Associations")

SLOT_KEY = ["entity_type", "entity_id", "usage_type", "is_primary"]


def _row_to_association(row) -> Association:
    data = row._mapping
    return Association(
        blob_id=data["image_id"],
        entity_type=data["entity_type"],
        entity_id=data["entity_id"],
        usage_type=data["usage_type"],
        is_primary=bool(data["is_primary"]),
        sort_order=data["sort_order"] or 0,
        created_at=as_utc(data["created_at"]),
    )


def _primary_first(rows) -> List[Association]:
    return sorted((_row_to_association(r) for r in rows), key=lambda a: (not a.is_primary, a.sort_order))


class AssociationManager:
    """
    Binds blobs to (entity_type, entity_id, usage_type) slots in 'image_usages'.

    A slot holds at most one primary row; the table's unique key
    (entity_type, entity_id, usage_type, is_primary) enforces it and link()
    writes through that key with a single upsert statement.
    """

    def __init__(self, db: Database):
        self.db = db

    def link(self, blob_id: str, entity_type: str, entity_id: str, usage_type: str = "main",
             is_primary: bool = False, sort_order: int = 0, conn: Optional[Connection] = None) -> Association:
        """
        Puts the blob into the slot. A primary link takes over the slot's primary
        row, whatever blob held it before; repeating the same call is a no-op.

        The displaced blob is not demoted and not deleted. It simply loses this
        reference, so callers replacing an image go through the lifecycle confirm,
        which releases the old blob in the same transaction.
        """
        slot = slot_label(entity_type, entity_id, usage_type)
        values = {
            "image_id": blob_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "usage_type": usage_type,
            "is_primary": is_primary,
            "sort_order": sort_order,
            "created_at": utc_now(),
        }
        with self.db.scope(conn) as c:
            stmt = dialect_insert(c, image_usages).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=SLOT_KEY,
                set_={
                    "image_id": stmt.excluded.image_id,
                    "sort_order": stmt.excluded.sort_order,
                    "created_at": stmt.excluded.created_at,
                },
            )
            c.execute(stmt)
            row = c.execute(
                select(image_usages).where(and_(
                    image_usages.c.entity_type == entity_type,
                    image_usages.c.entity_id == entity_id,
                    image_usages.c.usage_type == usage_type,
                    image_usages.c.is_primary == is_primary,
                ))
            ).one()
        logger.info(f"[{slot}] Linked blob {blob_id} (primary={is_primary}).")
        return _row_to_association(row)

    def unlink_all(self, entity_type: str, entity_id: str, usage_type: Optional[str] = None,
                   is_primary: Optional[bool] = None, conn: Optional[Connection] = None) -> List[Association]:
        """
        Removes every row of the slot (or of the whole entity when usage_type is None)
        and returns them. is_primary narrows the removal to the primary or secondary row.
        """
        conditions = [image_usages.c.entity_type == entity_type, image_usages.c.entity_id == entity_id]
        if usage_type is not None:
            conditions.append(image_usages.c.usage_type == usage_type)
        if is_primary is not None:
            conditions.append(image_usages.c.is_primary == is_primary)
        where = and_(*conditions)
        with self.db.scope(conn) as c:
            # Row lock serializes concurrent writers to the same slot (no-op on SQLite, which locks the database)
            rows = c.execute(select(image_usages).where(where).with_for_update()).all()
            if rows:
                c.execute(delete(image_usages).where(where))
        removed = _primary_first(rows)
        if removed:
            logger.info(f"[{slot_label(entity_type, entity_id, usage_type)}] Unlinked {len(removed)} association(s): {[a.blob_id for a in removed]}")
        return removed

    def unlink(self, entity_type: str, entity_id: str, usage_type: str = "main",
               conn: Optional[Connection] = None) -> Optional[Association]:
        """Removes the slot's association and returns it (primary first), or None if the slot was empty."""
        removed = self.unlink_all(entity_type, entity_id, usage_type, conn=conn)
        return removed[0] if removed else None

    def list_by_entity(self, entity_type: str, entity_id: str, conn: Optional[Connection] = None) -> List[Association]:
        """Primary first, then sort_order ascending, then newest blob first."""
        query = (
            select(image_usages)
            .join(images, images.c.id == image_usages.c.image_id)
            .where(and_(image_usages.c.entity_type == entity_type, image_usages.c.entity_id == entity_id))
            .order_by(image_usages.c.is_primary.desc(), image_usages.c.sort_order.asc(), images.c.created_at.desc())
        )
        with self.db.scope(conn) as c:
            rows = c.execute(query).all()
        return [_row_to_association(r) for r in rows]

    def list_by_blob(self, blob_id: str, conn: Optional[Connection] = None) -> List[Association]:
        with self.db.scope(conn) as c:
            rows = c.execute(select(image_usages).where(image_usages.c.image_id == blob_id)).all()
        return [_row_to_association(r) for r in rows]

    def reference_count(self, blob_id: str, conn: Optional[Connection] = None) -> int:
        with self.db.scope(conn) as c:
            return c.execute(
                select(func.count()).select_from(image_usages).where(image_usages.c.image_id == blob_id)
            ).scalar_one()

    def remove_for_blob(self, blob_id: str, conn: Optional[Connection] = None) -> int:
        """Drops every association of a blob. Used by forced deletes."""
        with self.db.scope(conn) as c:
            result = c.execute(delete(image_usages).where(image_usages.c.image_id == blob_id))
        if result.rowcount:
            logger.info(f"[{blob_id}] Removed {result.rowcount} association(s).")
        return result.rowcount
