import pytest
from bson import ObjectId

from database import UnitOfWork, create_document, find_by_id, get_documents, serialize, to_object_id


class Boom(Exception):
    pass


def test_create_document_stamps_times(mdb):
    doc_id = create_document(mdb, "thing", {"name": "a"})
    doc = find_by_id(mdb, "thing", doc_id)
    assert doc["created_at"] is not None
    assert doc["updated_at"] is not None


def test_get_documents_sorts_and_pages(mdb):
    for n in range(5):
        create_document(mdb, "thing", {"n": n})
    docs = get_documents(mdb, "thing", {}, limit=2, sort=[("n", -1)], skip=1)
    assert [d["n"] for d in docs] == [3, 2]


def test_writes_persist_when_block_succeeds(mdb):
    doc_id = create_document(mdb, "thing", {"n": 1})
    with UnitOfWork(mdb) as uow:
        assert uow.update("thing", {"_id": ObjectId(doc_id)}, {"$set": {"n": 2}})
        new_id = uow.insert("thing", {"n": 3})
    assert find_by_id(mdb, "thing", doc_id)["n"] == 2
    assert find_by_id(mdb, "thing", new_id)["n"] == 3


def test_rollback_restores_pre_images_and_drops_inserts(mdb):
    doc_id = create_document(mdb, "thing", {"n": 1, "tags": ["x"]})
    inserted = {}
    with pytest.raises(Boom):
        with UnitOfWork(mdb) as uow:
            uow.update("thing", {"_id": ObjectId(doc_id)}, {"$set": {"n": 2}, "$push": {"tags": "y"}})
            inserted["id"] = uow.insert("other", {"n": 9})
            uow.update("thing", {"_id": ObjectId(doc_id)}, {"$set": {"n": 3}})
            raise Boom()
    restored = find_by_id(mdb, "thing", doc_id)
    assert restored["n"] == 1
    assert restored["tags"] == ["x"]
    assert find_by_id(mdb, "other", inserted["id"]) is None


def test_failed_compare_and_set_records_nothing(mdb):
    doc_id = create_document(mdb, "thing", {"status": "assigned"})
    with UnitOfWork(mdb) as uow:
        assert not uow.update("thing", {"_id": ObjectId(doc_id), "status": "accepted"}, {"$set": {"status": "x"}})
        assert uow._undo == []
    assert find_by_id(mdb, "thing", doc_id)["status"] == "assigned"


def test_to_object_id_rejects_garbage():
    assert to_object_id("not-an-id") is None
    assert to_object_id(None) is None
    oid = ObjectId()
    assert to_object_id(str(oid)) == oid


def test_serialize_renames_ids_recursively():
    oid, other = ObjectId(), ObjectId()
    out = serialize({"_id": oid, "items": [{"_id": other, "ref": other}], "n": 1})
    assert out == {"id": str(oid), "items": [{"id": str(other), "ref": str(other)}], "n": 1}
