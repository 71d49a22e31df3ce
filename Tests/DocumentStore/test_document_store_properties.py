# test_document_store_properties.py
#
# Property-based tests for the Document_Store and Mango_Query libraries using Hypothesis.
#
# Imports
import itertools
#
# Third-Party Imports
from hypothesis import given, strategies as st, settings, HealthCheck
#
# Local Imports
from atlas_board.DB.Document_Store import DocumentStore, ConflictError
from atlas_board.DB.Mango_Query import matches_selector, sort_documents
#
########################################################################################################################
#
# Functions:
# --- Hypothesis Tests ---

# DB operations can be slow on CI; the stores are created inside each example.
settings.register_profile("db_friendly", deadline=1000, suppress_health_check=[HealthCheck.too_slow])
settings.load_profile("db_friendly")

st_field_name = st.text(alphabet="abcdefghij", min_size=1, max_size=8)
st_scalar = st.one_of(st.none(), st.booleans(), st.integers(-1000, 1000), st.text(max_size=20))
st_body = st.dictionaries(st_field_name, st_scalar, max_size=5)
st_hash = st.text(alphabet="0123456789abcdef", min_size=6, max_size=6)


def _new_store() -> DocumentStore:
    return DocumentStore(":memory:", client_id="hypothesis_client")


@given(bodies=st.lists(st_body, min_size=1, max_size=6))
def test_each_edit_bumps_generation_and_latest_body_wins(bodies):
    store = _new_store()
    try:
        rev = None
        for body in bodies:
            doc = {"_id": "doc", **body}
            if rev:
                doc["_rev"] = rev
            rev = store.put(doc)["rev"]
        stored = store.get("doc")
        assert stored["_rev"] == rev
        assert int(rev.split("-", 1)[0]) == len(bodies)
        assert {k: v for k, v in stored.items() if not k.startswith("_")} == bodies[-1]
    finally:
        store.close()


@given(body=st_body, other=st_body)
def test_stale_revision_always_conflicts(body, other):
    store = _new_store()
    try:
        first = store.put({"_id": "doc", **body})["rev"]
        store.put({"_id": "doc", "_rev": first, "marker": 1, **other})
        try:
            store.put({"_id": "doc", "_rev": first, **other})
            raised = False
        except ConflictError:
            raised = True
        assert raised
    finally:
        store.close()


@given(branch_hashes=st.lists(st_hash, min_size=2, max_size=4, unique=True), data=st.data())
def test_replicas_converge_on_the_same_winner(branch_hashes, data):
    base = {"_id": "shared", "_rev": "1-root", "_revisions": {"start": 1, "ids": ["root"]}, "v": 0}
    branches = [
        {"_id": "shared", "_rev": f"2-{h}", "_revisions": {"start": 2, "ids": [h, "root"]}, "v": h}
        for h in branch_hashes
    ]
    order = data.draw(st.permutations(branches))

    left, right = _new_store(), _new_store()
    try:
        left.bulk_docs([base] + branches, new_edits=False)
        right.bulk_docs([base] + list(order), new_edits=False)
        left_doc = left.get("shared", conflicts=True)
        right_doc = right.get("shared", conflicts=True)
        assert left_doc["_rev"] == right_doc["_rev"] == f"2-{max(branch_hashes)}"
        assert left_doc["_conflicts"] == right_doc["_conflicts"]
        assert len(left_doc["_conflicts"]) == len(branch_hashes) - 1
    finally:
        left.close()
        right.close()


@given(values=st.lists(st.one_of(st.none(), st.booleans(), st.integers(), st.text(max_size=5)), max_size=12))
def test_sort_documents_follows_collation_classes(values):
    docs = [{"_id": f"d{i:03d}", "v": v} for i, v in enumerate(values)]
    ordered = [d["v"] for d in sort_documents(docs, ["v"])]

    def _rank(v):
        if v is None:
            return 0
        if v is False:
            return 1
        if v is True:
            return 2
        if isinstance(v, int):
            return 3
        return 4

    ranks = [_rank(v) for v in ordered]
    assert ranks == sorted(ranks)
    for a, b in zip(ordered, ordered[1:]):
        if _rank(a) == _rank(b) and _rank(a) >= 3:
            assert a <= b


@given(doc=st_body, field=st_field_name, value=st_scalar)
def test_eq_and_ne_partition_documents(doc, field, value):
    eq = matches_selector(doc, {field: {"$eq": value}})
    ne = matches_selector(doc, {field: {"$ne": value}})
    assert eq != ne


@given(docs=st.lists(st.fixed_dictionaries({"n": st.integers(0, 20)}), max_size=10),
       threshold=st.integers(0, 20))
def test_or_is_union_of_branches(docs, threshold):
    low = {"n": {"$lt": threshold}}
    high = {"n": {"$gte": threshold}}
    for doc in docs:
        assert matches_selector(doc, {"$or": [low, high]})
        assert matches_selector(doc, low) != matches_selector(doc, high)


def test_collation_mixed_example():
    docs = [{"_id": str(i), "v": v} for i, v in enumerate(["b", 2, None, True, "a", 1, False])]
    assert [d["v"] for d in sort_documents(docs, ["v"])] == [None, False, True, 1, 2, "a", "b"]


def test_winner_is_independent_of_arrival_order():
    # Every ordering of three root-level branches
    branches = [
        {"_id": "x", "_rev": f"1-{h}", "_revisions": {"start": 1, "ids": [h]}, "v": h} for h in ("aa", "bb", "cc")
    ]
    winners = set()
    for order in itertools.permutations(branches):
        store = _new_store()
        try:
            store.bulk_docs(list(order), new_edits=False)
            winners.add(store.get("x")["_rev"])
        finally:
            store.close()
    assert winners == {"1-cc"}

#
# End of test_document_store_properties.py
########################################################################################################################
