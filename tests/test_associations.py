import pytest

from core.database import Database
from core.models import ImageMeta
from services.image_service.app.associations import AssociationManager
from services.image_service.app.blob_repository import BlobRepository


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'associations.db'}")
    database.create_all()
    yield database
    database.dispose()

@pytest.fixture
def manager(db):
    return AssociationManager(db)

@pytest.fixture
def blob_ids(db):
    repo = BlobRepository(db)
    return [repo.store(b"img-%d" % i, ImageMeta(file_name=f"img{i}.png", mime_type="image/png")) for i in range(4)]


# --- Tests for link ---
def test_link_returns_association(manager: AssociationManager, blob_ids):
    assoc = manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=True, sort_order=3)
    assert assoc.blob_id == blob_ids[0]
    assert (assoc.entity_type, assoc.entity_id, assoc.usage_type) == ("workflow", "42", "thumbnail")
    assert assoc.is_primary is True
    assert assoc.sort_order == 3

def test_second_primary_link_replaces_first(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=True)
    manager.link(blob_ids[1], "workflow", "42", "thumbnail", is_primary=True)

    rows = manager.list_by_entity("workflow", "42")
    assert len(rows) == 1
    assert rows[0].blob_id == blob_ids[1]
    assert rows[0].is_primary is True
    assert manager.reference_count(blob_ids[0]) == 0

def test_identical_link_is_idempotent(manager: AssociationManager, blob_ids):
    for _ in range(3):
        manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=True)
    assert manager.reference_count(blob_ids[0]) == 1

def test_slot_holds_one_primary_and_one_secondary(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "screenshot", is_primary=False)
    manager.link(blob_ids[1], "workflow", "42", "screenshot", is_primary=True)

    rows = manager.list_by_entity("workflow", "42")
    assert [r.blob_id for r in rows] == [blob_ids[1], blob_ids[0]]
    assert [r.is_primary for r in rows] == [True, False]

def test_slots_of_different_entities_are_independent(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "1", "thumbnail", is_primary=True)
    manager.link(blob_ids[0], "workflow", "2", "thumbnail", is_primary=True)
    manager.link(blob_ids[1], "author", "1", "thumbnail", is_primary=True)

    assert manager.reference_count(blob_ids[0]) == 2
    assert sorted(a.entity_id for a in manager.list_by_blob(blob_ids[0])) == ["1", "2"]
    assert manager.list_by_entity("author", "1")[0].blob_id == blob_ids[1]


# --- Tests for list_by_entity ordering ---
def test_list_orders_primary_first_then_sort_order(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "gallery", is_primary=False, sort_order=2)
    manager.link(blob_ids[1], "workflow", "42", "screenshot", is_primary=False, sort_order=1)
    manager.link(blob_ids[2], "workflow", "42", "thumbnail", is_primary=True, sort_order=5)

    rows = manager.list_by_entity("workflow", "42")
    assert [r.blob_id for r in rows] == [blob_ids[2], blob_ids[1], blob_ids[0]]

def test_list_unknown_entity_is_empty(manager: AssociationManager):
    assert manager.list_by_entity("workflow", "404") == []


# --- Tests for unlink ---
def test_unlink_returns_removed_primary(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=False)
    manager.link(blob_ids[1], "workflow", "42", "thumbnail", is_primary=True)

    removed = manager.unlink("workflow", "42", "thumbnail")
    assert removed.blob_id == blob_ids[1]
    assert removed.is_primary is True
    assert manager.list_by_entity("workflow", "42") == []

def test_unlink_empty_slot_returns_none(manager: AssociationManager):
    assert manager.unlink("workflow", "42", "thumbnail") is None

def test_unlink_all_without_usage_clears_entity(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=True)
    manager.link(blob_ids[1], "workflow", "42", "gallery", is_primary=False)
    manager.link(blob_ids[2], "workflow", "43", "thumbnail", is_primary=True)

    removed = manager.unlink_all("workflow", "42")
    assert sorted(a.blob_id for a in removed) == sorted(blob_ids[:2])
    assert removed[0].is_primary is True
    assert manager.list_by_entity("workflow", "42") == []
    assert len(manager.list_by_entity("workflow", "43")) == 1

def test_unlink_all_can_target_secondary_row(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "42", "thumbnail", is_primary=True)
    manager.link(blob_ids[1], "workflow", "42", "thumbnail", is_primary=False)

    removed = manager.unlink_all("workflow", "42", "thumbnail", is_primary=False)
    assert [a.blob_id for a in removed] == [blob_ids[1]]
    assert [a.blob_id for a in manager.list_by_entity("workflow", "42")] == [blob_ids[0]]

def test_remove_for_blob_drops_every_reference(manager: AssociationManager, blob_ids):
    manager.link(blob_ids[0], "workflow", "1", "thumbnail", is_primary=True)
    manager.link(blob_ids[0], "author", "9", "avatar", is_primary=True)

    assert manager.remove_for_blob(blob_ids[0]) == 2
    assert manager.reference_count(blob_ids[0]) == 0

def test_link_inside_outer_transaction(db: Database, manager: AssociationManager, blob_ids):
    with db.transaction() as conn:
        manager.unlink_all("workflow", "42", "thumbnail", conn=conn)
        manager.link(blob_ids[3], "workflow", "42", "thumbnail", is_primary=True, conn=conn)
        assert manager.reference_count(blob_ids[3], conn=conn) == 1
    assert manager.list_by_entity("workflow", "42")[0].blob_id == blob_ids[3]
