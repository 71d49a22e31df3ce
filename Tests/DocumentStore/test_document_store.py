# test_document_store.py
#
#
# Imports
import base64
import threading
from pathlib import Path
#
# Third-Party Imports
import pytest
#
# Local Imports
from atlas_board.DB.Document_Store import (
    DocumentStore,
    DocumentStoreError,
    SchemaError,
    InputError,
    ConflictError
)
#
#######################################################################################################################
#
# Functions:


class TestStoreInitialization:
    def test_memory_store_initializes_schema(self, mem_store):
        conn = mem_store.get_connection()
        version = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = 'atlas_document_store'").fetchone()
        assert version['version'] == DocumentStore._CURRENT_SCHEMA_VERSION

    def test_file_store_is_reopenable(self, tmp_path, client_id):
        path = tmp_path / "nested" / "store.db"
        store = DocumentStore(path, client_id)
        store.put({"_id": "country_1", "type": "country", "name": "France"})
        store.close()

        reopened = DocumentStore(path, client_id)
        assert reopened.get("country_1")["name"] == "France"
        reopened.close()

    def test_empty_client_id_is_rejected(self):
        with pytest.raises(ValueError):
            DocumentStore(":memory:", client_id="")

    def test_newer_schema_raises_schema_error(self, tmp_path, client_id):
        path = tmp_path / "future.db"
        store = DocumentStore(path, client_id)
        with store.transaction() as conn:
            conn.execute("UPDATE db_schema_version SET version = 99 WHERE schema_name = 'atlas_document_store'")
        store.close()
        with pytest.raises(SchemaError):
            DocumentStore(path, client_id)

    def test_use_after_close_raises(self, client_id):
        store = DocumentStore(":memory:", client_id)
        store.close()
        store.close()  # harmless
        with pytest.raises(DocumentStoreError):
            store.get("anything")

    def test_memory_store_is_shared_across_threads(self, mem_store):
        mem_store.put({"_id": "doc_main", "value": 1})
        seen = {}

        def _reader():
            seen["doc"] = mem_store.get("doc_main")
            mem_store.put({"_id": "doc_thread", "value": 2})

        t = threading.Thread(target=_reader)
        t.start()
        t.join()
        assert seen["doc"]["value"] == 1
        assert mem_store.get("doc_thread")["value"] == 2


class TestDocumentCrud:
    def test_put_assigns_generation_one_revision(self, mem_store):
        result = mem_store.put({"_id": "country_a", "type": "country", "name": "France"})
        assert result["ok"] is True
        assert result["rev"].startswith("1-")
        doc = mem_store.get("country_a")
        assert doc["_rev"] == result["rev"]
        assert doc["name"] == "France"

    def test_update_requires_current_revision(self, mem_store):
        first = mem_store.put({"_id": "d1", "n": 1})
        second = mem_store.put({"_id": "d1", "_rev": first["rev"], "n": 2})
        assert second["rev"].startswith("2-")
        assert second["rev"] != first["rev"]

        with pytest.raises(ConflictError) as exc_info:
            mem_store.put({"_id": "d1", "_rev": first["rev"], "n": 3})
        assert exc_info.value.doc_id == "d1"
        assert mem_store.get("d1")["n"] == 2

    def test_update_without_revision_conflicts(self, mem_store):
        mem_store.put({"_id": "d1", "n": 1})
        with pytest.raises(ConflictError):
            mem_store.put({"_id": "d1", "n": 2})

    def test_rev_for_missing_document_conflicts(self, mem_store):
        with pytest.raises(ConflictError):
            mem_store.put({"_id": "ghost", "_rev": "1-abc", "n": 1})

    def test_revisions_are_deterministic(self, client_id):
        a = DocumentStore(":memory:", client_id)
        b = DocumentStore(":memory:", client_id)
        try:
            assert a.put({"_id": "x", "v": 1})["rev"] == b.put({"_id": "x", "v": 1})["rev"]
        finally:
            a.close()
            b.close()

    def test_remove_then_get_returns_none(self, mem_store):
        rev = mem_store.put({"_id": "d1", "n": 1})["rev"]
        result = mem_store.remove("d1", rev)
        assert result["rev"].startswith("2-")
        assert mem_store.get("d1") is None
        tombstone = mem_store.get("d1", rev=result["rev"])
        assert tombstone["_deleted"] is True

    def test_remove_with_stale_revision_conflicts(self, mem_store):
        rev1 = mem_store.put({"_id": "d1", "n": 1})["rev"]
        mem_store.put({"_id": "d1", "_rev": rev1, "n": 2})
        with pytest.raises(ConflictError):
            mem_store.remove("d1", rev1)

    def test_recreate_after_delete_extends_tombstone(self, mem_store):
        rev = mem_store.put({"_id": "d1", "n": 1})["rev"]
        mem_store.remove("d1", rev)
        again = mem_store.put({"_id": "d1", "n": 5})
        assert again["rev"].startswith("3-")
        assert mem_store.get("d1")["n"] == 5

    def test_get_missing_returns_none(self, mem_store):
        assert mem_store.get("nope") is None

    def test_old_revision_bodies_are_compacted(self, mem_store):
        rev1 = mem_store.put({"_id": "d1", "n": 1})["rev"]
        mem_store.put({"_id": "d1", "_rev": rev1, "n": 2})
        assert mem_store.get("d1", rev=rev1) is None

    def test_revs_history(self, mem_store):
        rev1 = mem_store.put({"_id": "d1", "n": 1})["rev"]
        rev2 = mem_store.put({"_id": "d1", "_rev": rev1, "n": 2})["rev"]
        doc = mem_store.get("d1", revs=True)
        assert doc["_revisions"] == {"start": 2, "ids": [rev2.split("-", 1)[1], rev1.split("-", 1)[1]]}

    @pytest.mark.parametrize("bad_doc", [
        {"n": 1},
        {"_id": "", "n": 1},
        {"_id": "_reserved", "n": 1},
        {"_id": "d1", "_weird": True},
    ])
    def test_invalid_documents_are_rejected(self, mem_store, bad_doc):
        with pytest.raises(InputError):
            mem_store.put(bad_doc)


class TestAllDocs:
    @pytest.fixture
    def populated(self, mem_store):
        for doc_id in ["comment_1", "country_1", "country_2", "message_1", "message_2"]:
            mem_store.put({"_id": doc_id, "type": doc_id.split("_")[0]})
        return mem_store

    def test_prefix_range(self, populated):
        result = populated.all_docs(startkey="country_", endkey="country_\uffff", include_docs=True)
        assert [r["id"] for r in result["rows"]] == ["country_1", "country_2"]
        assert all(r["doc"]["type"] == "country" for r in result["rows"])
        assert result["total_rows"] == 5

    def test_descending_limit_skip(self, populated):
        result = populated.all_docs(descending=True, limit=2, skip=1)
        assert [r["id"] for r in result["rows"]] == ["message_1", "country_2"]

    def test_keys_lookup_reports_missing(self, populated):
        result = populated.all_docs(keys=["country_2", "missing"])
        assert result["rows"][0]["id"] == "country_2"
        assert result["rows"][1] == {"key": "missing", "error": "not_found"}

    def test_deleted_documents_are_excluded(self, populated):
        rev = populated.get("country_1")["_rev"]
        populated.remove("country_1", rev)
        ids = [r["id"] for r in populated.all_docs()["rows"]]
        assert "country_1" not in ids


class TestFindAndIndexes:
    @pytest.fixture
    def countries(self, mem_store):
        data = [
            ("country_fr", "France", "Europe", 68),
            ("country_de", "Germany", "Europe", 84),
            ("country_jp", "Japan", "Asia", 125),
            ("country_br", "Brazil", "Americas", 203),
        ]
        for doc_id, name, region, population in data:
            mem_store.put({"_id": doc_id, "type": "country", "name": name, "region": region,
                           "population": population})
        mem_store.put({"_id": "message_1", "type": "message", "title": "Hello", "likes": 3})
        return mem_store

    def test_find_without_index_warns(self, countries):
        result = countries.find({"type": "country", "region": "Europe"})
        assert {d["name"] for d in result["docs"]} == {"France", "Germany"}
        assert "warning" in result

    def test_find_with_index_has_no_warning(self, countries):
        created = countries.create_index(["type", "region"], name="idx-type-region")
        assert created["result"] == "created"
        result = countries.find({"type": "country", "region": "Europe"})
        assert {d["name"] for d in result["docs"]} == {"France", "Germany"}
        assert "warning" not in result

    def test_create_index_twice_reports_exists(self, countries):
        countries.create_index(["type", "region"], name="idx-type-region")
        assert countries.create_index(["type", "region"], name="idx-type-region")["result"] == "exists"
        names = [i["name"] for i in countries.get_indexes()["indexes"]]
        assert names.count("idx-type-region") == 1
        assert "_all_docs" in names

    def test_indexes_do_not_appear_in_changes(self, countries):
        before = countries.info()["update_seq"]
        countries.create_index(["type", "likes"])
        assert countries.info()["update_seq"] == before

    def test_delete_index(self, countries):
        countries.create_index(["type", "region"], name="idx-type-region")
        assert countries.delete_index("idx-type-region") is True
        assert countries.delete_index("idx-type-region") is False

    def test_sort_limit_skip(self, countries):
        result = countries.find({"type": "country"}, sort=[{"population": "desc"}], limit=2, skip=1)
        assert [d["name"] for d in result["docs"]] == ["Japan", "Germany"]

    def test_case_insensitive_regex(self, countries):
        result = countries.find({"type": "country", "name": {"$regex": "(?i)^fr"}})
        assert [d["_id"] for d in result["docs"]] == ["country_fr"]

    def test_or_selector(self, countries):
        result = countries.find({"type": "country", "$or": [{"region": "Asia"}, {"name": "Brazil"}]},
                                sort=["name"])
        assert [d["name"] for d in result["docs"]] == ["Brazil", "Japan"]

    def test_fields_projection(self, countries):
        result = countries.find({"_id": "country_fr"}, fields=["_id", "name"])
        assert result["docs"] == [{"_id": "country_fr", "name": "France"}]

    def test_unknown_operator_is_input_error(self, countries):
        with pytest.raises(InputError):
            countries.find({"type": {"$like": "c%"}})

    def test_bad_index_field_is_rejected(self, mem_store):
        with pytest.raises(InputError):
            mem_store.create_index(["type", "name'); DROP TABLE documents; --"])

    def test_index_on_id_does_not_hide_documents(self, countries):
        assert len(countries.find({"_id": "country_fr"})["docs"]) == 1
        countries.create_index(["_id"], name="idx-id")
        assert [d["_id"] for d in countries.find({"_id": "country_fr"})["docs"]] == ["country_fr"]
        countries.create_index(["type", "_id"], name="idx-type-id")
        result = countries.find({"type": "country", "_id": {"$eq": "country_jp"}})
        assert [d["name"] for d in result["docs"]] == ["Japan"]

    def test_huge_integer_selector_falls_back_to_python(self, countries):
        countries.create_index(["type", "likes"], name="idx-type-likes")
        assert countries.find({"type": "message", "likes": 2 ** 70})["docs"] == []
        assert [d["_id"] for d in countries.find({"type": "message", "likes": 3})["docs"]] == ["message_1"]

    def test_non_string_regex_is_input_error(self, countries):
        with pytest.raises(InputError):
            countries.find({"type": "country", "name": {"$regex": 5}})
        with pytest.raises(InputError):
            countries.find({"type": "country", "name": {"$regex": ["F"]}})


class TestAttachments:
    def test_put_get_remove_attachment(self, mem_store):
        rev = mem_store.put({"_id": "message_1", "type": "message", "title": "Hi"})["rev"]
        result = mem_store.put_attachment("message_1", "photo.png", rev, b"\x89PNG data", "image/png")
        assert result["rev"].startswith("2-")

        doc = mem_store.get("message_1")
        stub = doc["_attachments"]["photo.png"]
        assert stub["stub"] is True
        assert stub["length"] == len(b"\x89PNG data")
        assert "data" not in stub

        att = mem_store.get_attachment("message_1", "photo.png")
        assert att["data"] == b"\x89PNG data"
        assert att["content_type"] == "image/png"

        removed = mem_store.remove_attachment("message_1", "photo.png", result["rev"])
        assert removed["rev"].startswith("3-")
        assert mem_store.get_attachment("message_1", "photo.png") is None

    def test_attachment_survives_body_update_with_stub(self, mem_store):
        rev = mem_store.put({"_id": "m", "title": "a"})["rev"]
        rev = mem_store.put_attachment("m", "f.txt", rev, b"hello", "text/plain")["rev"]
        doc = mem_store.get("m")
        doc["title"] = "b"
        mem_store.put(doc)
        assert mem_store.get_attachment("m", "f.txt")["data"] == b"hello"

    def test_inline_base64_attachment_on_put(self, mem_store):
        mem_store.put({"_id": "m", "_attachments": {
            "a.txt": {"content_type": "text/plain", "data": base64.b64encode(b"abc").decode()}}})
        assert mem_store.get("m", attachments=True)["_attachments"]["a.txt"]["data"] == base64.b64encode(b"abc").decode()

    def test_stale_revision_on_attachment_conflicts(self, mem_store):
        rev1 = mem_store.put({"_id": "m"})["rev"]
        mem_store.put({"_id": "m", "_rev": rev1, "x": 1})
        with pytest.raises(ConflictError):
            mem_store.put_attachment("m", "f", rev1, b"x", "text/plain")

    def test_remove_missing_attachment_returns_none(self, mem_store):
        rev = mem_store.put({"_id": "m"})["rev"]
        assert mem_store.remove_attachment("m", "nothing", rev) is None
        assert mem_store.remove_attachment("ghost", "nothing", rev) is None


class TestReplicationSurface:
    def test_changes_feed_orders_by_sequence(self, mem_store):
        mem_store.put({"_id": "a"})
        rev_b = mem_store.put({"_id": "b"})["rev"]
        mem_store.put({"_id": "b", "_rev": rev_b, "x": 1})
        feed = mem_store.changes()
        assert [r["id"] for r in feed["results"]] == ["a", "b"]
        assert feed["last_seq"] == feed["results"][-1]["seq"]

        later = mem_store.changes(since=feed["results"][0]["seq"])
        assert [r["id"] for r in later["results"]] == ["b"]

    def test_changes_reports_deletions(self, mem_store):
        rev = mem_store.put({"_id": "a"})["rev"]
        mem_store.remove("a", rev)
        result = mem_store.changes()["results"][0]
        assert result["deleted"] is True

    def test_revs_diff(self, mem_store):
        rev = mem_store.put({"_id": "a"})["rev"]
        diff = mem_store.revs_diff({"a": [rev, "2-zzz"], "b": ["1-yyy"]})
        assert diff == {"a": {"missing": ["2-zzz"]}, "b": {"missing": ["1-yyy"]}}

    def test_bulk_docs_new_edits_false_keeps_revisions(self, mem_store):
        results = mem_store.bulk_docs([{"_id": "r1", "_rev": "3-ccc", "_revisions": {"start": 3, "ids": ["ccc", "bbb", "aaa"]},
                                        "v": 1}], new_edits=False)
        assert results[0]["ok"] is True
        doc = mem_store.get("r1", revs=True)
        assert doc["_rev"] == "3-ccc"
        assert doc["_revisions"]["ids"] == ["ccc", "bbb", "aaa"]

    def test_concurrent_branches_pick_deterministic_winner(self, mem_store):
        base = mem_store.put({"_id": "c", "v": 0})["rev"]
        base_hash = base.split("-", 1)[1]
        mem_store.bulk_docs([
            {"_id": "c", "_rev": "2-aaa", "_revisions": {"start": 2, "ids": ["aaa", base_hash]}, "v": "left"},
            {"_id": "c", "_rev": "2-bbb", "_revisions": {"start": 2, "ids": ["bbb", base_hash]}, "v": "right"},
        ], new_edits=False)
        doc = mem_store.get("c", conflicts=True)
        assert doc["_rev"] == "2-bbb"
        assert doc["v"] == "right"
        assert doc["_conflicts"] == ["2-aaa"]

    def test_deleting_winner_promotes_conflict(self, mem_store):
        base = mem_store.put({"_id": "c", "v": 0})["rev"].split("-", 1)[1]
        mem_store.bulk_docs([
            {"_id": "c", "_rev": "2-aaa", "_revisions": {"start": 2, "ids": ["aaa", base]}, "v": "left"},
            {"_id": "c", "_rev": "2-bbb", "_revisions": {"start": 2, "ids": ["bbb", base]}, "v": "right"},
        ], new_edits=False)
        mem_store.remove("c", "2-bbb")
        assert mem_store.get("c")["v"] == "left"

    def test_replicated_history_demotes_known_leaf(self, mem_store):
        first = mem_store.put({"_id": "h", "v": 1})["rev"].split("-", 1)[1]
        mem_store.bulk_docs([{"_id": "h", "_rev": "3-ccc", "_revisions": {"start": 3, "ids": ["ccc", "bbb", first]},
                              "v": 3}], new_edits=False)
        doc = mem_store.get("h", conflicts=True)
        assert doc["_rev"] == "3-ccc"
        assert "_conflicts" not in doc

    def test_bulk_docs_reports_per_document_conflicts(self, mem_store):
        mem_store.put({"_id": "a"})
        results = mem_store.bulk_docs([{"_id": "a", "x": 1}, {"_id": "b", "x": 2}])
        assert results[0]["error"] == "conflict"
        assert results[1]["ok"] is True

    def test_get_open_revs_includes_history_and_data(self, mem_store):
        rev = mem_store.put({"_id": "m"})["rev"]
        rev = mem_store.put_attachment("m", "f", rev, b"abc", "text/plain")["rev"]
        docs = mem_store.get_open_revs("m", [rev, "9-missing"])
        assert len(docs) == 1
        assert docs[0]["_revisions"]["start"] == 2
        assert "data" in docs[0]["_attachments"]["f"]

    def test_local_documents(self, mem_store):
        assert mem_store.get_local("_local/checkpoint") is None
        first = mem_store.put_local("_local/checkpoint", {"last_seq": 5})
        second = mem_store.put_local("checkpoint", {"last_seq": 7})
        assert first["rev"] == "0-1"
        assert second["rev"] == "0-2"
        doc = mem_store.get_local("checkpoint")
        assert doc["last_seq"] == 7
        assert mem_store.changes()["results"] == []

    def test_info(self, mem_store):
        mem_store.put({"_id": "a"})
        info = mem_store.info()
        assert info["doc_count"] == 1
        assert info["update_seq"] >= 1


class TestChangeListeners:
    def test_listener_receives_committed_changes(self, mem_store):
        seen = []
        unsubscribe = mem_store.on_change(seen.append)
        rev = mem_store.put({"_id": "a"})["rev"]
        mem_store.remove("a", rev)
        assert [c["id"] for c in seen] == ["a", "a"]
        assert seen[-1]["deleted"] is True

        unsubscribe()
        unsubscribe()
        mem_store.put({"_id": "b"})
        assert len(seen) == 2

    def test_failing_listener_does_not_break_writes(self, mem_store):
        def _boom(change):
            raise RuntimeError("listener failure")

        mem_store.on_change(_boom)
        assert mem_store.put({"_id": "a"})["ok"] is True

    def test_failed_write_is_not_announced(self, mem_store):
        seen = []
        mem_store.put({"_id": "a"})
        mem_store.on_change(seen.append)
        with pytest.raises(ConflictError):
            mem_store.put({"_id": "a"})
        assert seen == []

#
# End of test_document_store.py
#######################################################################################################################
