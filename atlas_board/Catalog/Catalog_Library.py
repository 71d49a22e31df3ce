# Catalog_Library.py
# Description: Service layer for countries, messages and comments stored in the local DocumentStore
#
# Imports
import logging
import re
from typing import List, Dict, Optional, Any
#
# Third-Party Imports
#
# Local Imports
from ..DB.Document_Store import (
    DocumentStore,
    DocumentStoreError,
    InputError,
    ConflictError
)
from .catalog_schemas import new_document, validate_fields, type_prefix_range, utc_now_iso
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024

CATALOG_INDEXES = (
    ("idx-type-region", ["type", "region"]),
    ("idx-type-countryId", ["type", "countryId"]),
    ("idx-type-messageId", ["type", "messageId"]),
    ("idx-type-likes", ["type", "likes"]),
    ("idx-type-createdAt", ["type", "createdAt"]),
)


def _case_insensitive_pattern(text: str) -> str:
    return "(?i)" + re.escape(text)


class CatalogService:
    """
    Queries and commands for the catalog, issued against the local replica only.

    Remote convergence is the replication controller's job. Point lookups return None for
    missing documents; stale revisions raise ConflictError.
    """

    def __init__(self, store: DocumentStore, max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES):
        if store is None:
            raise DocumentStoreError("CatalogService requires an open DocumentStore.")
        self.store = store
        self.max_attachment_bytes = max_attachment_bytes
        logger.info(f"CatalogService initialized with store: {store.db_path_str}")

    # --- Indexes ---
    def ensure_indexes(self) -> List[Dict[str, Any]]:
        """Declares the catalog index set. Safe to call on every startup."""
        results = []
        for name, fields in CATALOG_INDEXES:
            results.append(self.store.create_index(fields, name=name, ddoc="atlas-catalog"))
        logger.debug(f"Catalog indexes ensured: {[r['result'] for r in results]}")
        return results

    # --- Generic operations ---
    def fetch_by_type_prefix(self, doc_type: str) -> List[Dict[str, Any]]:
        startkey, endkey = type_prefix_range(doc_type)
        result = self.store.all_docs(startkey=startkey, endkey=endkey, include_docs=True)
        return [row["doc"] for row in result["rows"] if "doc" in row]

    def find_by_selector(self, selector: Dict[str, Any], sort: Optional[List[Any]] = None,
                         limit: Optional[int] = None, skip: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.find(selector, sort=sort, limit=limit, skip=skip)["docs"]

    def get_by_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        return self.store.get(doc_id)

    def create(self, doc_type: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Creates a document with a freshly minted id. Returns the stored document."""
        doc = new_document(doc_type, fields)
        result = self.store.put(doc)
        doc["_rev"] = result["rev"]
        logger.info(f"Created {doc_type} {doc['_id']}")
        return doc

    def update(self, doc_id: str, patch: Dict[str, Any], expected_rev: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Read-modify-write: shallow-merges `patch` onto the current revision.

        Args:
            doc_id: The document to update.
            patch: Fields to overwrite. `_id`, `_rev` and `type` in the patch are ignored.
            expected_rev: When given, the write is made against this revision instead of the
                          freshly read one, so an intervening change raises ConflictError.

        Returns:
            The stored document, or None if it does not exist.
        """
        current = self.store.get(doc_id)
        if current is None:
            logger.warning(f"Update skipped: {doc_id} not found.")
            return None
        doc_type = current.get("type")
        merged = {k: v for k, v in current.items() if not k.startswith("_")}
        merged.update({k: v for k, v in patch.items() if not k.startswith("_") and k != "type"})
        if doc_type == "message":
            merged["updatedAt"] = utc_now_iso()
        body = validate_fields(doc_type, merged)

        doc = {"_id": doc_id, "_rev": expected_rev or current["_rev"], "type": doc_type}
        doc.update(body)
        if current.get("_attachments"):
            doc["_attachments"] = current["_attachments"]
        try:
            result = self.store.put(doc)
        except ConflictError:
            logger.error(f"Update conflict on {doc_id} (rev {doc['_rev']}).")
            raise
        doc["_rev"] = result["rev"]
        return doc

    def delete(self, doc_id: str, expected_rev: Optional[str] = None) -> bool:
        """Removes a document. Returns False if it was already gone."""
        current = self.store.get(doc_id)
        if current is None:
            return False
        try:
            self.store.remove(doc_id, expected_rev or current["_rev"])
        except ConflictError:
            logger.error(f"Delete conflict on {doc_id}.")
            raise
        logger.info(f"Deleted {doc_id}")
        return True

    # --- Attachments ---
    def put_attachment(self, doc_id: str, name: str, data: bytes, content_type: str) -> Optional[Dict[str, Any]]:
        if len(data) > self.max_attachment_bytes:
            raise InputError(f"Attachment '{name}' is {len(data)} bytes; the limit is {self.max_attachment_bytes}.")
        current = self.store.get(doc_id)
        if current is None:
            return None
        result = self.store.put_attachment(doc_id, name, current["_rev"], data, content_type)
        logger.info(f"Stored attachment '{name}' ({len(data)} bytes) on {doc_id}")
        return result

    def get_attachment(self, doc_id: str, name: str) -> Optional[Dict[str, Any]]:
        return self.store.get_attachment(doc_id, name)

    def remove_attachment(self, doc_id: str, name: str) -> Optional[Dict[str, Any]]:
        current = self.store.get(doc_id)
        if current is None:
            return None
        return self.store.remove_attachment(doc_id, name, current["_rev"])

    # --- Countries ---
    def create_country(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.create("country", fields)

    def list_countries(self) -> List[Dict[str, Any]]:
        return self.find_by_selector({"type": "country"}, sort=["name"])

    def countries_by_region(self, region: str) -> List[Dict[str, Any]]:
        return self.find_by_selector({"type": "country", "region": region}, sort=["name"])

    def search_countries(self, text: str, region: Optional[str] = None) -> List[Dict[str, Any]]:
        selector: Dict[str, Any] = {"type": "country"}
        if region:
            selector["region"] = region
        if text:
            pattern = _case_insensitive_pattern(text)
            selector["$or"] = [{"name": {"$regex": pattern}}, {"capital": {"$regex": pattern}},
                               {"region": {"$regex": pattern}}]
        return self.find_by_selector(selector, sort=["name"])

    # --- Messages ---
    def create_message(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        country_id = fields.get("countryId")
        country = self.get_by_id(country_id) if country_id else None
        if country is None or country.get("type") != "country":
            raise InputError(f"Cannot create message: country '{country_id}' does not exist.")
        payload = dict(fields)
        payload.setdefault("likes", 0)
        return self.create("message", payload)

    def messages_for_country(self, country_id: str) -> List[Dict[str, Any]]:
        return self.find_by_selector({"type": "message", "countryId": country_id}, sort=[{"createdAt": "desc"}])

    def search_messages(self, text: str, country_id: Optional[str] = None) -> List[Dict[str, Any]]:
        selector: Dict[str, Any] = {"type": "message"}
        if country_id:
            selector["countryId"] = country_id
        if text:
            pattern = _case_insensitive_pattern(text)
            selector["$or"] = [{"title": {"$regex": pattern}}, {"content": {"$regex": pattern}}]
        return self.find_by_selector(selector, sort=[{"createdAt": "desc"}])

    def _adjust_likes(self, message_id: str, delta: int) -> Optional[Dict[str, Any]]:
        message = self.get_by_id(message_id)
        if message is None:
            return None
        likes = max(0, int(message.get("likes", 0)) + delta)
        return self.update(message_id, {"likes": likes}, expected_rev=message["_rev"])

    def like_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self._adjust_likes(message_id, 1)

    def unlike_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self._adjust_likes(message_id, -1)

    def top_liked_messages(self, n: int = 10) -> List[Dict[str, Any]]:
        return self.find_by_selector({"type": "message", "likes": {"$gte": 0}},
                                     sort=[{"likes": "desc"}], limit=n)

    def delete_message(self, message_id: str) -> bool:
        """Deletes a message and then its comments, one by one (not atomic)."""
        comments = self.comments_for_message(message_id)
        for comment in comments:
            self.delete(comment["_id"])
        deleted = self.delete(message_id)
        logger.info(f"Deleted message {message_id} with {len(comments)} comment(s)")
        return deleted

    # --- Comments ---
    def create_comment(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        message_id = fields.get("messageId")
        message = self.get_by_id(message_id) if message_id else None
        if message is None or message.get("type") != "message":
            raise InputError(f"Cannot create comment: message '{message_id}' does not exist.")
        return self.create("comment", fields)

    def comments_for_message(self, message_id: str) -> List[Dict[str, Any]]:
        return self.find_by_selector({"type": "comment", "messageId": message_id}, sort=["createdAt"])

    def first_comment_per_message(self, message_ids: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Maps message id -> its earliest comment."""
        selector: Dict[str, Any] = {"type": "comment"}
        if message_ids is not None:
            selector["messageId"] = {"$in": list(message_ids)}
        first: Dict[str, Dict[str, Any]] = {}
        for comment in self.find_by_selector(selector, sort=["createdAt"]):
            first.setdefault(comment["messageId"], comment)
        return first

#
# End of Catalog_Library.py
#######################################################################################################################
