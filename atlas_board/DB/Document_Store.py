# Document_Store.py
# Description: SQLite-backed local document store (the on-device replica).
#
"""
Document_Store.py
-----------------

A local-first JSON document store built on SQLite, speaking the same document and
revision model as a CouchDB-compatible server so that it can replicate with one.

This library provides:
- Schema management with versioning.
- Thread-safe database connections using `threading.local`, serialized by a store lock.
- Documents addressed by `_id`, versioned by opaque `_rev` tokens (`"{generation}-{md5}"`).
- Optimistic concurrency: updates and deletes must present a current revision.
- A full revision tree per document, so replicated concurrent edits are kept as
  conflict branches and a deterministic winner is chosen on every replica.
- Inline binary attachments that travel with the document.
- A sequence-numbered changes feed, `revs_diff`, `bulk_docs(new_edits=False)` and
  `_local` checkpoint documents for the replicator.
- Declared secondary indexes backed by SQLite expression indexes, used to
  pre-filter Mango selector queries (see `Mango_Query.py`).
- Change listeners notified after every committed write.
"""
# Imports
import base64
import hashlib
import json
import logging
import re
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
#
# Third-Party Libraries
#
# Local Imports
from .Mango_Query import SelectorError, matches_selector, plan_query, sort_documents, validate_selector, \
    normalize_sort
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Dict[str, Any]], None]


# --- Custom Exceptions ---
class DocumentStoreError(Exception):
    """Base exception for DocumentStore related errors."""
    pass


class SchemaError(DocumentStoreError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(DocumentStoreError):
    """
    Indicates a write conflict: the presented revision is missing or stale.

    Attributes:
        doc_id (Optional[str]): The document involved in the conflict.
        rev (Optional[str]): The revision that was presented, if any.
    """

    def __init__(self, message="Document update conflict.", doc_id: Optional[str] = None, rev: Optional[str] = None):
        super().__init__(message)
        self.doc_id = doc_id
        self.rev = rev

    def __str__(self):
        base = super().__str__()
        details = []
        if self.doc_id:
            details.append(f"ID: {self.doc_id}")
        if self.rev:
            details.append(f"Rev: {self.rev}")
        return f"{base} ({', '.join(details)})" if details else base


_FIELD_PATH_RE = re.compile(r"^[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)*$")
_ALLOWED_SPECIAL_FIELDS = {"_id", "_rev", "_deleted", "_attachments", "_revisions", "_conflicts"}
LOCAL_PREFIX = "_local/"


def _json_dumps(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _rev_num(rev: str) -> int:
    try:
        return int(rev.split("-", 1)[0])
    except (ValueError, AttributeError) as e:
        raise InputError(f"Invalid revision token: {rev!r}") from e


def _rev_hash(rev: str) -> str:
    return rev.split("-", 1)[1] if "-" in rev else rev


# --- Database Class ---
class DocumentStore:
    """
    Manages SQLite connections and document operations for one local replica.

    Attributes:
        db_path (Path): The absolute path to the SQLite database file, or Path(":memory:").
        client_id (str): The identifier for the client instance using this store.
        is_memory_db (bool): True if the database is in-memory.
        db_path_str (str): String representation of the database path for logging.
        name (str): Short store name (file stem, or "memory").
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "atlas_document_store"

    _FULL_SCHEMA_SQL_V1 = """
/*───────────────────────────────────────────────────────────────
  Atlas Document Store  –  Version 1
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name,version)
VALUES('atlas_document_store',0);

/*----------------------------------------------------------------
  1. Documents (winning revision per id)
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS documents(
  doc_id      TEXT    PRIMARY KEY NOT NULL,
  winning_rev TEXT    NOT NULL,
  deleted     BOOLEAN NOT NULL DEFAULT 0,
  seq         INTEGER NOT NULL,
  body        TEXT    NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_documents_seq ON documents(seq);

/*----------------------------------------------------------------
  2. Revision tree
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS revisions(
  doc_id     TEXT    NOT NULL,
  rev        TEXT    NOT NULL,
  rev_num    INTEGER NOT NULL,
  parent_rev TEXT,
  deleted    BOOLEAN NOT NULL DEFAULT 0,
  is_leaf    BOOLEAN NOT NULL DEFAULT 1,
  body       TEXT,                       /* NULL once compacted */
  PRIMARY KEY(doc_id, rev)
);
CREATE INDEX IF NOT EXISTS idx_revisions_leaf ON revisions(doc_id, is_leaf);

/*----------------------------------------------------------------
  3. Local (non-replicated) documents
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS local_docs(
  doc_id TEXT PRIMARY KEY NOT NULL,
  rev    TEXT NOT NULL,
  body   TEXT NOT NULL
);

/*----------------------------------------------------------------
  4. Declared secondary indexes
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS index_definitions(
  name       TEXT PRIMARY KEY NOT NULL,
  ddoc       TEXT NOT NULL,
  fields     TEXT NOT NULL,
  created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);

UPDATE db_schema_version
   SET version = 1
 WHERE schema_name = 'atlas_document_store'
   AND version < 1;
"""

    def __init__(self, db_path: Union[str, Path], client_id: str = "atlas_local_instance"):
        """
        Opens (or creates) a local document store.

        Args:
            db_path: Path to the SQLite database file or ":memory:" for an in-memory store
                     shared by every thread that uses this handle.
            client_id: Identifier for this client instance. Must not be empty.

        Raises:
            ValueError: If `client_id` is empty.
            DocumentStoreError: If the directory cannot be created or initialization fails.
            SchemaError: If the on-disk schema is newer than this library supports.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'
        self.name = self.db_path.stem if not self.is_memory_db else "memory"

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if self.is_memory_db:
            self._connect_target = f"file:atlas_mem_{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._connect_uri = True
        else:
            self._connect_target = self.db_path_str
            self._connect_uri = False
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DocumentStoreError(f"Failed to create database directory {self.db_path.parent}: {e}")

        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._listeners: List[ChangeListener] = []
        self._closed = False
        self._keeper: Optional[sqlite3.Connection] = None

        logger.info(f"Initializing DocumentStore for path: {self.db_path_str} [Client ID: {self.client_id}]")
        try:
            if self.is_memory_db:
                # Shared-cache memory databases vanish with their last connection
                self._keeper = self._get_thread_connection()
            self._initialize_schema()
            logger.debug(f"DocumentStore initialization completed successfully for {self.db_path_str}")
        except (DocumentStoreError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DocumentStore initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close()
            if isinstance(e, SchemaError):
                raise
            raise DocumentStoreError(f"Database initialization failed: {e}") from e

    @property
    def identity(self) -> str:
        """Stable identifier used to derive replication ids."""
        return f"local:{self.db_path_str if not self.is_memory_db else self._connect_target}"

    @property
    def is_closed(self) -> bool:
        return self._closed

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        """
        Retrieves or creates a thread-local SQLite connection.

        Raises:
            DocumentStoreError: If the store has been closed or connecting fails.
        """
        if self._closed:
            raise DocumentStoreError(f"DocumentStore '{self.db_path_str}' is closed.")
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(
                    self._connect_target,
                    uri=self._connect_uri,
                    check_same_thread=False,
                    timeout=15
                )
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                self._local.conn = conn
                self._connections.append(conn)
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise DocumentStoreError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close(self):
        """
        Closes every connection opened through this handle.

        Any later operation raises DocumentStoreError. Listeners are dropped.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._listeners.clear()
            for conn in self._connections:
                try:
                    if conn.in_transaction:
                        conn.rollback()
                    if not self.is_memory_db:
                        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing SQLite connection for {self.db_path_str}: {e}")
            self._connections.clear()
            self._keeper = None
            self._local = threading.local()
        logger.info(f"DocumentStore '{self.db_path_str}' closed.")

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> sqlite3.Cursor:
        """
        Executes a single SQL statement on the current thread's connection.

        Raises:
            DocumentStoreError: For SQLite errors.
        """
        conn = self.get_connection()
        try:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Executing SQL: {query[:300]}... Params: {str(params)[:200]}...")
            return conn.execute(query, params or ())
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            raise DocumentStoreError(f"Query execution failed: {e}") from e

    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for database transactions.

        Usage:
            with store.transaction() as conn:
                conn.execute(...)
        """
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ?",
                               (self._SCHEMA_NAME,)).fetchone()
            return row['version'] if row else 0
        except sqlite3.OperationalError as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version: {e}") from e

    def _initialize_schema(self):
        conn = self.get_connection()
        current_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_version}. "
                    f"Code supports: {target_version}")

        if current_version == target_version:
            return
        if current_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer than supported by code "
                f"({target_version}).")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Schema initialization failed for '{self._SCHEMA_NAME}': {e}", exc_info=True)
            raise SchemaError(f"Schema initialization for '{self._SCHEMA_NAME}' failed: {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != target_version:
            raise SchemaError(f"Schema initialization completed, but final DB version is {final_version}, "
                              f"expected {target_version}.")
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {final_version}.")

    # --- Change Listeners ---
    def on_change(self, callback: ChangeListener) -> Callable[[], None]:
        """
        Registers a callback invoked after each committed document change.

        Returns:
            A callable that unregisters the callback. Calling it twice is harmless.
        """
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return _unsubscribe

    def _notify(self, changes: List[Dict[str, Any]]):
        if not changes:
            return
        with self._lock:
            listeners = list(self._listeners)
        for change in changes:
            for callback in listeners:
                try:
                    callback(change)
                except Exception as e:
                    logger.error(f"Change listener {callback!r} failed for {change.get('id')}: {e}", exc_info=True)

    # --- Internal Helpers ---
    @staticmethod
    def _get_current_utc_timestamp_iso() -> str:
        return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

    @staticmethod
    def _generate_revision(rev_num: int, parent_rev: Optional[str], deleted: bool, body: Dict[str, Any]) -> str:
        """Deterministic `"{generation}-{md5}"` revision token."""
        digest = hashlib.md5(_json_dumps([parent_rev, bool(deleted), body]).encode("utf-8")).hexdigest()
        return f"{rev_num}-{digest}"

    @staticmethod
    def _validate_doc_id(doc_id: Any):
        if not isinstance(doc_id, str) or not doc_id:
            raise InputError("Document _id must be a non-empty string.")
        if doc_id.startswith("_") and not doc_id.startswith("_design/"):
            raise InputError(f"Document _id '{doc_id}' is reserved. Use put_local() for _local documents.")

    @staticmethod
    def _split_document(doc: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Separates the stored body from the special `_` fields. Returns (body, deleted)."""
        if not isinstance(doc, dict):
            raise InputError(f"Document must be a dict, got {type(doc).__name__}.")
        body: Dict[str, Any] = {}
        for key, value in doc.items():
            if key.startswith("_"):
                if key not in _ALLOWED_SPECIAL_FIELDS:
                    raise InputError(f"Bad special document member: {key}")
                if key == "_attachments" and value:
                    body[key] = value
                continue
            body[key] = value
        return body, bool(doc.get("_deleted", False))

    @staticmethod
    def _normalize_attachments(body: Dict[str, Any], previous_bodies: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Converts attachment entries to their stored form `{content_type, data, digest, length}`.

        Entries marked `stub` are resolved against earlier revision bodies of the same document.
        """
        attachments = body.get("_attachments")
        if not attachments:
            body.pop("_attachments", None)
            return body
        if not isinstance(attachments, dict):
            raise InputError("_attachments must be an object.")

        normalized: Dict[str, Any] = {}
        for name, att in attachments.items():
            if not isinstance(att, dict):
                raise InputError(f"Attachment '{name}' must be an object.")
            if att.get("stub"):
                found = None
                for prev in previous_bodies:
                    candidate = (prev.get("_attachments") or {}).get(name)
                    if candidate and (not att.get("digest") or candidate.get("digest") == att.get("digest")):
                        found = candidate
                        break
                if found is None:
                    raise InputError(f"Attachment stub '{name}' has no stored data to refer to.")
                normalized[name] = dict(found)
                continue
            data = att.get("data")
            if isinstance(data, (bytes, bytearray)):
                raw = bytes(data)
            elif isinstance(data, str):
                try:
                    raw = base64.b64decode(data, validate=True)
                except (ValueError, TypeError) as e:
                    raise InputError(f"Attachment '{name}' data is not valid base64: {e}") from e
            else:
                raise InputError(f"Attachment '{name}' needs inline data or stub=true.")
            normalized[name] = {
                "content_type": att.get("content_type") or "application/octet-stream",
                "data": base64.b64encode(raw).decode("ascii"),
                "digest": "md5-" + base64.b64encode(hashlib.md5(raw).digest()).decode("ascii"),
                "length": len(raw),
            }
        body["_attachments"] = normalized
        return body

    @staticmethod
    def _stub_attachments(doc: Dict[str, Any]) -> Dict[str, Any]:
        attachments = doc.get("_attachments")
        if attachments:
            doc["_attachments"] = {
                name: {"content_type": att.get("content_type"), "digest": att.get("digest"),
                       "length": att.get("length"), "stub": True}
                for name, att in attachments.items()
            }
        return doc

    @staticmethod
    def _load_body(text: Optional[str]) -> Optional[Dict[str, Any]]:
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Failed to decode stored document body: '{text[:100]}...'")
            return {}

    def _next_seq(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS max_seq FROM documents").fetchone()
        return row['max_seq'] + 1

    def _leaf_rows(self, conn: sqlite3.Connection, doc_id: str) -> List[sqlite3.Row]:
        return conn.execute("SELECT * FROM revisions WHERE doc_id = ? AND is_leaf = 1", (doc_id,)).fetchall()

    def _rev_path(self, conn: sqlite3.Connection, doc_id: str, rev: str) -> List[str]:
        """Walks parent links from `rev` to the root. Newest first."""
        path = []
        current: Optional[str] = rev
        while current:
            path.append(current)
            row = conn.execute("SELECT parent_rev FROM revisions WHERE doc_id = ? AND rev = ?",
                               (doc_id, current)).fetchone()
            current = row['parent_rev'] if row else None
        return path

    def _revisions_field(self, conn: sqlite3.Connection, doc_id: str, rev: str) -> Dict[str, Any]:
        path = self._rev_path(conn, doc_id, rev)
        return {"start": _rev_num(rev), "ids": [_rev_hash(r) for r in path]}

    def _recompute_winner(self, conn: sqlite3.Connection, doc_id: str) -> Dict[str, Any]:
        """
        Picks the winning revision among the leaves and refreshes the `documents` row.

        Winner: non-deleted leaves beat deleted ones, then highest generation, then the
        lexically highest revision hash. Every replica makes the same choice.
        """
        leaves = self._leaf_rows(conn, doc_id)
        if not leaves:
            raise DocumentStoreError(f"Document {doc_id} has no leaf revisions.")
        winner = max(leaves, key=lambda r: (not r['deleted'], r['rev_num'], r['rev']))
        seq = self._next_seq(conn)
        body_text = winner['body'] if winner['body'] is not None else '{}'
        conn.execute(
            """INSERT INTO documents(doc_id, winning_rev, deleted, seq, body) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(doc_id) DO UPDATE SET winning_rev = excluded.winning_rev, deleted = excluded.deleted,
                                                 seq = excluded.seq, body = excluded.body""",
            (doc_id, winner['rev'], int(bool(winner['deleted'])), seq, body_text)
        )
        return {"id": doc_id, "seq": seq, "rev": winner['rev'], "deleted": bool(winner['deleted'])}

    def _insert_revision(self, conn: sqlite3.Connection, doc_id: str, rev: str, parent_rev: Optional[str],
                         deleted: bool, body: Optional[Dict[str, Any]]):
        conn.execute(
            "INSERT INTO revisions(doc_id, rev, rev_num, parent_rev, deleted, is_leaf, body) VALUES (?, ?, ?, ?, ?, 1, ?)",
            (doc_id, rev, _rev_num(rev), parent_rev, int(deleted), _json_dumps(body) if body is not None else None)
        )
        if parent_rev:
            # Compaction: only leaves keep their bodies
            conn.execute("UPDATE revisions SET is_leaf = 0, body = NULL WHERE doc_id = ? AND rev = ?",
                         (doc_id, parent_rev))

    def _put_in_transaction(self, conn: sqlite3.Connection, doc: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Writes a new edit. Returns (result, change)."""
        doc_id = doc.get("_id")
        self._validate_doc_id(doc_id)
        given_rev = doc.get("_rev")
        body, deleted = self._split_document(doc)

        row = conn.execute("SELECT winning_rev, deleted FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        if row is None:
            if given_rev:
                raise ConflictError("Document update conflict: document does not exist.", doc_id=doc_id, rev=given_rev)
            parent_rev, rev_num, parent_body = None, 1, None
        elif given_rev:
            leaf = conn.execute("SELECT * FROM revisions WHERE doc_id = ? AND rev = ? AND is_leaf = 1",
                                (doc_id, given_rev)).fetchone()
            if leaf is None or leaf['deleted']:
                raise ConflictError("Document update conflict: stale or unknown revision.", doc_id=doc_id,
                                    rev=given_rev)
            parent_rev, rev_num, parent_body = given_rev, leaf['rev_num'] + 1, self._load_body(leaf['body'])
        else:
            if not row['deleted']:
                raise ConflictError("Document update conflict: revision required to update an existing document.",
                                    doc_id=doc_id)
            parent_rev = row['winning_rev']
            rev_num, parent_body = _rev_num(parent_rev) + 1, None

        body = self._normalize_attachments(body, [parent_body] if parent_body else [])
        if deleted:
            body.pop("_attachments", None)
        new_rev = self._generate_revision(rev_num, parent_rev, deleted, body)
        self._insert_revision(conn, doc_id, new_rev, parent_rev, deleted, body)
        change = self._recompute_winner(conn, doc_id)
        return {"ok": True, "id": doc_id, "rev": new_rev}, change

    def _insert_replicated(self, conn: sqlite3.Connection, doc: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Merges a revision (with its history) produced elsewhere. Returns (result, change or None)."""
        doc_id = doc.get("_id")
        self._validate_doc_id(doc_id)
        rev = doc.get("_rev")
        if not rev:
            raise InputError(f"Replicated document {doc_id} has no _rev.")
        revisions = doc.get("_revisions") or {"start": _rev_num(rev), "ids": [_rev_hash(rev)]}
        start = int(revisions["start"])
        path = [f"{start - i}-{rev_hash}" for i, rev_hash in enumerate(revisions["ids"])]
        if not path or path[0] != rev:
            raise InputError(f"_revisions history for {doc_id} does not end in {rev}.")

        exists = conn.execute("SELECT 1 FROM revisions WHERE doc_id = ? AND rev = ?", (doc_id, rev)).fetchone()
        if exists:
            return {"ok": True, "id": doc_id, "rev": rev}, None

        body, deleted = self._split_document(doc)
        stored_bodies = [self._load_body(r['body']) for r in self._leaf_rows(conn, doc_id) if r['body']]
        body = self._normalize_attachments(body, stored_bodies)

        # Ancestors oldest first; a known ancestor stops being a leaf
        for i in range(len(path) - 1, 0, -1):
            ancestor, ancestor_parent = path[i], path[i + 1] if i + 1 < len(path) else None
            known = conn.execute("SELECT 1 FROM revisions WHERE doc_id = ? AND rev = ?", (doc_id, ancestor)).fetchone()
            if known:
                conn.execute("UPDATE revisions SET is_leaf = 0, body = NULL WHERE doc_id = ? AND rev = ?",
                             (doc_id, ancestor))
            else:
                conn.execute(
                    "INSERT INTO revisions(doc_id, rev, rev_num, parent_rev, deleted, is_leaf, body) VALUES (?, ?, ?, ?, 0, 0, NULL)",
                    (doc_id, ancestor, _rev_num(ancestor), ancestor_parent))
        parent_rev = path[1] if len(path) > 1 else None
        self._insert_revision(conn, doc_id, rev, parent_rev, deleted, body)
        change = self._recompute_winner(conn, doc_id)
        return {"ok": True, "id": doc_id, "rev": rev}, change

    def _row_to_doc(self, doc_id: str, rev: str, body_text: Optional[str], deleted: bool = False,
                    attachments: bool = False) -> Dict[str, Any]:
        body = self._load_body(body_text) or {}
        doc = {"_id": doc_id, "_rev": rev}
        doc.update(body)
        if deleted:
            doc["_deleted"] = True
        if not attachments:
            self._stub_attachments(doc)
        return doc

    # --- Document CRUD ---
    def get(self, doc_id: str, rev: Optional[str] = None, revs: bool = False, conflicts: bool = False,
            attachments: bool = False) -> Optional[Dict[str, Any]]:
        """
        Fetches a document.

        Args:
            doc_id: The document id.
            rev: Optional specific revision. Deleted revisions are returned with `_deleted`.
            revs: Include `_revisions` (the revision history).
            conflicts: Include `_conflicts` (losing non-deleted leaves).
            attachments: Include attachment data instead of stubs.

        Returns:
            The document dict, or None when it does not exist, is deleted, or the requested
            revision is unknown or compacted.
        """
        with self._lock:
            conn = self.get_connection()
            try:
                row = conn.execute("SELECT * FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
                if row is None:
                    return None
                if rev:
                    rev_row = conn.execute("SELECT * FROM revisions WHERE doc_id = ? AND rev = ?",
                                           (doc_id, rev)).fetchone()
                    if rev_row is None or rev_row['body'] is None:
                        return None
                    doc = self._row_to_doc(doc_id, rev, rev_row['body'], bool(rev_row['deleted']), attachments)
                else:
                    if row['deleted']:
                        return None
                    doc = self._row_to_doc(doc_id, row['winning_rev'], row['body'], False, attachments)
                if revs:
                    doc["_revisions"] = self._revisions_field(conn, doc_id, doc["_rev"])
                if conflicts:
                    losers = [r for r in self._leaf_rows(conn, doc_id)
                              if not r['deleted'] and r['rev'] != row['winning_rev']]
                    if losers:
                        losers.sort(key=lambda r: (r['rev_num'], r['rev']), reverse=True)
                        doc["_conflicts"] = [r['rev'] for r in losers]
                return doc
            except sqlite3.Error as e:
                logger.error(f"Failed to get document {doc_id}: {e}", exc_info=True)
                raise DocumentStoreError(f"Failed to get document {doc_id}: {e}") from e

    def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Creates or updates a document.

        Returns:
            `{"ok": True, "id": ..., "rev": ...}`

        Raises:
            InputError: For malformed documents.
            ConflictError: If the document exists and `_rev` is missing or not a current leaf.
        """
        with self._lock:
            try:
                with self.transaction() as conn:
                    result, change = self._put_in_transaction(conn, doc)
            except sqlite3.Error as e:
                logger.error(f"Failed to put document {doc.get('_id')}: {e}", exc_info=True)
                raise DocumentStoreError(f"Failed to put document {doc.get('_id')}: {e}") from e
        logger.debug(f"Stored {result['id']} at {result['rev']}")
        self._notify([change])
        return result

    def remove(self, doc_id: str, rev: str) -> Dict[str, Any]:
        """Deletes a document by writing a tombstone revision. Raises ConflictError on stale `rev`."""
        if not rev:
            raise ConflictError("A revision is required to delete a document.", doc_id=doc_id)
        return self.put({"_id": doc_id, "_rev": rev, "_deleted": True})

    def bulk_docs(self, docs: List[Dict[str, Any]], new_edits: bool = True) -> List[Dict[str, Any]]:
        """
        Writes several documents.

        With `new_edits=False` the documents are treated as existing revisions produced by
        another replica (the replicator's write path): their `_rev` and `_revisions` are
        kept and merged into the revision tree.

        Returns:
            One result per input document: `{"ok", "id", "rev"}` or `{"id", "error", "reason"}`.
        """
        results: List[Dict[str, Any]] = []
        changes: List[Dict[str, Any]] = []
        with self._lock:
            try:
                with self.transaction() as conn:
                    for doc in docs:
                        doc_id = doc.get("_id") if isinstance(doc, dict) else None
                        try:
                            if new_edits:
                                result, change = self._put_in_transaction(conn, doc)
                            else:
                                result, change = self._insert_replicated(conn, doc)
                        except ConflictError as e:
                            results.append({"id": doc_id, "error": "conflict", "reason": str(e)})
                            continue
                        except InputError as e:
                            results.append({"id": doc_id, "error": "bad_request", "reason": str(e)})
                            continue
                        results.append(result)
                        if change:
                            changes.append(change)
            except sqlite3.Error as e:
                logger.error(f"bulk_docs failed: {e}", exc_info=True)
                raise DocumentStoreError(f"bulk_docs failed: {e}") from e
        self._notify(changes)
        return results

    def all_docs(self, startkey: Optional[str] = None, endkey: Optional[str] = None,
                 keys: Optional[List[str]] = None, include_docs: bool = False, descending: bool = False,
                 limit: Optional[int] = None, skip: int = 0, inclusive_end: bool = True,
                 attachments: bool = False) -> Dict[str, Any]:
        """
        Lists non-deleted documents ordered by id, optionally within a key range.

        With `descending=True`, `startkey` is the upper bound (CouchDB semantics).
        """
        with self._lock:
            conn = self.get_connection()
            try:
                total = conn.execute("SELECT COUNT(*) AS n FROM documents WHERE deleted = 0").fetchone()['n']
                rows: List[Dict[str, Any]] = []
                if keys is not None:
                    for key in keys:
                        row = conn.execute("SELECT * FROM documents WHERE doc_id = ?", (key,)).fetchone()
                        if row is None:
                            rows.append({"key": key, "error": "not_found"})
                            continue
                        entry = {"id": key, "key": key, "value": {"rev": row['winning_rev']}}
                        if row['deleted']:
                            entry["value"]["deleted"] = True
                        elif include_docs:
                            entry["doc"] = self._row_to_doc(key, row['winning_rev'], row['body'], attachments=attachments)
                        rows.append(entry)
                    return {"total_rows": total, "offset": 0, "rows": rows}

                low, high = (endkey, startkey) if descending else (startkey, endkey)
                clauses, params = ["deleted = 0"], []
                if low is not None:
                    clauses.append("doc_id >= ?")
                    params.append(low)
                if high is not None:
                    clauses.append("doc_id <= ?" if inclusive_end else "doc_id < ?")
                    params.append(high)
                query = (f"SELECT * FROM documents WHERE {' AND '.join(clauses)} "
                         f"ORDER BY doc_id {'DESC' if descending else 'ASC'} LIMIT ? OFFSET ?")
                params.extend([limit if limit is not None else -1, skip or 0])
                for row in conn.execute(query, tuple(params)).fetchall():
                    entry = {"id": row['doc_id'], "key": row['doc_id'], "value": {"rev": row['winning_rev']}}
                    if include_docs:
                        entry["doc"] = self._row_to_doc(row['doc_id'], row['winning_rev'], row['body'],
                                                        attachments=attachments)
                    rows.append(entry)
                return {"total_rows": total, "offset": skip or 0, "rows": rows}
            except sqlite3.Error as e:
                logger.error(f"all_docs failed: {e}", exc_info=True)
                raise DocumentStoreError(f"all_docs failed: {e}") from e

    # --- Secondary Indexes ---
    @staticmethod
    def _index_field_names(fields: List[Any]) -> List[str]:
        names = [name for name, _direction in normalize_sort(fields)]
        if not names:
            raise InputError("An index needs at least one field.")
        for name in names:
            if not _FIELD_PATH_RE.match(name):
                raise InputError(f"Unsupported index field name: '{name}'")
        return names

    @staticmethod
    def _sql_index_name(name: str) -> str:
        return "mango_" + re.sub(r"[^A-Za-z0-9_]", "_", name)

    def _declared_indexes(self, conn: sqlite3.Connection) -> List[Dict[str, Any]]:
        rows = conn.execute("SELECT name, ddoc, fields FROM index_definitions ORDER BY name").fetchall()
        return [{"name": r['name'], "ddoc": r['ddoc'], "fields": json.loads(r['fields'])} for r in rows]

    def create_index(self, fields: List[Any], name: Optional[str] = None, ddoc: Optional[str] = None) -> Dict[str, Any]:
        """
        Declares a secondary index over one or more document fields.

        Re-declaring an identical index is a no-op (`result == "exists"`).

        Returns:
            `{"result": "created" | "exists", "id": "_design/<ddoc>", "name": <name>}`
        """
        field_names = self._index_field_names(fields)
        digest = hashlib.md5(_json_dumps(field_names).encode("utf-8")).hexdigest()[:16]
        name = name or f"idx-{digest}"
        ddoc = ddoc or f"idx-{digest}"
        ddoc_id = ddoc if ddoc.startswith("_design/") else f"_design/{ddoc}"
        sql_name = self._sql_index_name(name)
        expressions = ", ".join(f"json_extract(body, '$.{f}')" for f in field_names)

        with self._lock:
            try:
                with self.transaction() as conn:
                    existing = conn.execute("SELECT fields FROM index_definitions WHERE name = ?", (name,)).fetchone()
                    if existing and json.loads(existing['fields']) == field_names:
                        return {"result": "exists", "id": ddoc_id, "name": name}
                    if existing:
                        conn.execute(f'DROP INDEX IF EXISTS "{sql_name}"')
                        conn.execute("DELETE FROM index_definitions WHERE name = ?", (name,))
                    conn.execute(f'CREATE INDEX IF NOT EXISTS "{sql_name}" ON documents({expressions})')
                    conn.execute("INSERT INTO index_definitions(name, ddoc, fields) VALUES (?, ?, ?)",
                                 (name, ddoc_id, json.dumps(field_names)))
            except sqlite3.Error as e:
                logger.error(f"Failed to create index {name}: {e}", exc_info=True)
                raise DocumentStoreError(f"Failed to create index {name}: {e}") from e
        logger.info(f"Created index '{name}' on {field_names}")
        return {"result": "created", "id": ddoc_id, "name": name}

    def get_indexes(self) -> Dict[str, Any]:
        with self._lock:
            conn = self.get_connection()
            declared = self._declared_indexes(conn)
        indexes = [{"ddoc": None, "name": "_all_docs", "type": "special", "def": {"fields": [{"_id": "asc"}]}}]
        for idx in declared:
            indexes.append({"ddoc": idx["ddoc"], "name": idx["name"], "type": "json",
                            "def": {"fields": [{f: "asc"} for f in idx["fields"]]}})
        return {"total_rows": len(indexes), "indexes": indexes}

    def delete_index(self, name: str) -> bool:
        with self._lock:
            with self.transaction() as conn:
                cursor = conn.execute("DELETE FROM index_definitions WHERE name = ?", (name,))
                if cursor.rowcount == 0:
                    return False
                conn.execute(f'DROP INDEX IF EXISTS "{self._sql_index_name(name)}"')
        logger.info(f"Deleted index '{name}'")
        return True

    # --- Selector Queries ---
    def find(self, selector: Dict[str, Any], fields: Optional[List[str]] = None, sort: Optional[List[Any]] = None,
             limit: Optional[int] = None, skip: Optional[int] = None, use_index: Optional[str] = None) -> Dict[str, Any]:
        """
        Runs a Mango selector query against the winning revisions.

        A declared index whose leading fields are equality-constrained by the selector is
        used to pre-filter rows in SQL; otherwise every document is scanned and a warning
        is returned. Sorting, `skip` and `limit` are applied here, not by the caller.

        Returns:
            `{"docs": [...]}` plus `"warning"` when no index was usable.

        Raises:
            InputError: For malformed selectors or sort specifications.
        """
        try:
            validate_selector(selector)
            normalize_sort(sort)
        except SelectorError as e:
            raise InputError(str(e)) from e

        with self._lock:
            conn = self.get_connection()
            try:
                index, pushdown = plan_query(selector, self._declared_indexes(conn), use_index)
                clauses, params = ["deleted = 0"], []
                for field, value in pushdown.items():
                    clauses.append(f"json_extract(body, '$.{field}') = ?")
                    params.append(value)
                rows = conn.execute(f"SELECT doc_id, winning_rev, body FROM documents WHERE {' AND '.join(clauses)}",
                                    tuple(params)).fetchall()
            except sqlite3.Error as e:
                logger.error(f"find failed for selector {selector}: {e}", exc_info=True)
                raise DocumentStoreError(f"find failed: {e}") from e

        try:
            docs = [self._row_to_doc(r['doc_id'], r['winning_rev'], r['body']) for r in rows]
            docs = [d for d in docs if matches_selector(d, selector)]
        except SelectorError as e:
            raise InputError(str(e)) from e
        docs = sort_documents(docs, sort)
        start = skip or 0
        docs = docs[start:start + limit] if limit is not None else docs[start:]
        if fields:
            docs = [{f: d[f] for f in fields if f in d} for d in docs]

        result: Dict[str, Any] = {"docs": docs}
        if index is None:
            result["warning"] = "No matching index found, create an index to optimize query time."
            logger.debug(f"Full scan for selector {selector}")
        return result

    # --- Attachments ---
    def _leaf_body_for_update(self, conn: sqlite3.Connection, doc_id: str, rev: Optional[str]) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT winning_rev, deleted FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        if row is None or (row['deleted'] and not rev):
            if rev:
                raise ConflictError("Document update conflict: document does not exist.", doc_id=doc_id, rev=rev)
            return None
        if not rev:
            raise ConflictError("Document update conflict: revision required.", doc_id=doc_id)
        leaf = conn.execute("SELECT * FROM revisions WHERE doc_id = ? AND rev = ? AND is_leaf = 1 AND deleted = 0",
                            (doc_id, rev)).fetchone()
        if leaf is None:
            raise ConflictError("Document update conflict: stale or unknown revision.", doc_id=doc_id, rev=rev)
        return self._load_body(leaf['body']) or {}

    def put_attachment(self, doc_id: str, name: str, rev: Optional[str], data: bytes,
                       content_type: str) -> Dict[str, Any]:
        """
        Adds or replaces a named attachment, creating a new revision.

        Creates the document when it does not exist and `rev` is None.
        """
        if not name:
            raise InputError("Attachment name cannot be empty.")
        if not isinstance(data, (bytes, bytearray)):
            raise InputError("Attachment data must be bytes.")
        with self._lock:
            try:
                with self.transaction() as conn:
                    body = self._leaf_body_for_update(conn, doc_id, rev) or {}
                    attachments = dict(body.get("_attachments") or {})
                    attachments[name] = {"content_type": content_type, "data": bytes(data)}
                    doc = {"_id": doc_id, **{k: v for k, v in body.items() if k != "_attachments"},
                           "_attachments": attachments}
                    if rev:
                        doc["_rev"] = rev
                    result, change = self._put_in_transaction(conn, doc)
            except sqlite3.Error as e:
                raise DocumentStoreError(f"Failed to put attachment {name} on {doc_id}: {e}") from e
        self._notify([change])
        return result

    def get_attachment(self, doc_id: str, name: str, rev: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Returns `{"content_type", "data": bytes, "digest", "length"}` or None when missing."""
        doc = self.get(doc_id, rev=rev, attachments=True)
        if not doc:
            return None
        att = (doc.get("_attachments") or {}).get(name)
        if not att:
            return None
        return {"content_type": att["content_type"], "data": base64.b64decode(att["data"]),
                "digest": att.get("digest"), "length": att.get("length")}

    def remove_attachment(self, doc_id: str, name: str, rev: str) -> Optional[Dict[str, Any]]:
        """Removes an attachment. Returns None when the document or attachment does not exist."""
        with self._lock:
            try:
                with self.transaction() as conn:
                    row = conn.execute("SELECT deleted FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
                    if row is None or row['deleted']:
                        return None
                    body = self._leaf_body_for_update(conn, doc_id, rev) or {}
                    attachments = dict(body.get("_attachments") or {})
                    if name not in attachments:
                        return None
                    del attachments[name]
                    doc = {"_id": doc_id, "_rev": rev, **{k: v for k, v in body.items() if k != "_attachments"}}
                    if attachments:
                        doc["_attachments"] = attachments
                    result, change = self._put_in_transaction(conn, doc)
            except sqlite3.Error as e:
                raise DocumentStoreError(f"Failed to remove attachment {name} from {doc_id}: {e}") from e
        self._notify([change])
        return result

    # --- Replication Surface ---
    def info(self) -> Dict[str, Any]:
        with self._lock:
            conn = self.get_connection()
            doc_count = conn.execute("SELECT COUNT(*) AS n FROM documents WHERE deleted = 0").fetchone()['n']
            update_seq = conn.execute("SELECT COALESCE(MAX(seq), 0) AS s FROM documents").fetchone()['s']
        return {"db_name": self.name, "doc_count": doc_count, "update_seq": update_seq, "adapter": "sqlite"}

    @staticmethod
    def _parse_since(since: Any) -> int:
        if since in (None, "", 0):
            return 0
        try:
            return int(str(since).split("-", 1)[0])
        except ValueError as e:
            raise InputError(f"Invalid 'since' value: {since!r}") from e

    def changes(self, since: Any = 0, limit: Optional[int] = None, include_docs: bool = False,
                style: str = "main_only", doc_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Returns the changes feed: the latest change per document after `since`.

        Args:
            since: Sequence to start after (0 for the beginning, "now" for the current end).
            limit: Maximum number of results.
            include_docs: Include the winning document in each result.
            style: "main_only" (winning revision) or "all_docs" (every leaf revision).
            doc_ids: Restrict the feed to these ids.

        Returns:
            `{"results": [{"seq", "id", "changes": [{"rev"}], "deleted"?, "doc"?}], "last_seq"}`
        """
        with self._lock:
            conn = self.get_connection()
            if since == "now":
                return {"results": [], "last_seq": self.info()["update_seq"]}
            since_seq = self._parse_since(since)
            query = "SELECT * FROM documents WHERE seq > ?"
            params: List[Any] = [since_seq]
            if doc_ids:
                query += f" AND doc_id IN ({', '.join('?' for _ in doc_ids)})"
                params.extend(doc_ids)
            query += " ORDER BY seq ASC LIMIT ?"
            params.append(limit if limit is not None else -1)
            results = []
            for row in conn.execute(query, tuple(params)).fetchall():
                revs = [row['winning_rev']]
                if style == "all_docs":
                    revs += sorted((r['rev'] for r in self._leaf_rows(conn, row['doc_id'])
                                    if r['rev'] != row['winning_rev']), reverse=True)
                entry: Dict[str, Any] = {"seq": row['seq'], "id": row['doc_id'], "changes": [{"rev": r} for r in revs]}
                if row['deleted']:
                    entry["deleted"] = True
                if include_docs:
                    entry["doc"] = self._row_to_doc(row['doc_id'], row['winning_rev'], row['body'],
                                                    deleted=bool(row['deleted']))
                results.append(entry)
        last_seq = results[-1]["seq"] if results else since_seq
        return {"results": results, "last_seq": last_seq}

    def revs_diff(self, revs: Dict[str, List[str]]) -> Dict[str, Dict[str, List[str]]]:
        """Given `{id: [rev, ...]}`, returns `{id: {"missing": [...]}}` for revisions not stored here."""
        diff: Dict[str, Dict[str, List[str]]] = {}
        with self._lock:
            conn = self.get_connection()
            for doc_id, rev_list in revs.items():
                missing = [r for r in rev_list
                           if not conn.execute("SELECT 1 FROM revisions WHERE doc_id = ? AND rev = ?",
                                               (doc_id, r)).fetchone()]
                if missing:
                    diff[doc_id] = {"missing": missing}
        return diff

    def get_open_revs(self, doc_id: str, revs: List[str]) -> List[Dict[str, Any]]:
        """
        Returns the requested leaf revisions with `_revisions` and inline attachments.

        Revisions that are unknown or compacted are skipped.
        """
        docs = []
        with self._lock:
            conn = self.get_connection()
            for rev in revs:
                row = conn.execute("SELECT * FROM revisions WHERE doc_id = ? AND rev = ?", (doc_id, rev)).fetchone()
                if row is None or row['body'] is None:
                    logger.debug(f"Open revision {doc_id}@{rev} is not available locally.")
                    continue
                doc = self._row_to_doc(doc_id, rev, row['body'], bool(row['deleted']), attachments=True)
                doc["_revisions"] = self._revisions_field(conn, doc_id, rev)
                docs.append(doc)
        return docs

    # --- Local (non-replicated) documents ---
    @staticmethod
    def _local_key(local_id: str) -> str:
        return local_id[len(LOCAL_PREFIX):] if local_id.startswith(LOCAL_PREFIX) else local_id

    def get_local(self, local_id: str) -> Optional[Dict[str, Any]]:
        key = self._local_key(local_id)
        with self._lock:
            row = self.execute_query("SELECT * FROM local_docs WHERE doc_id = ?", (key,)).fetchone()
        if row is None:
            return None
        doc = {"_id": LOCAL_PREFIX + key, "_rev": row['rev']}
        doc.update(self._load_body(row['body']) or {})
        return doc

    def put_local(self, local_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._local_key(local_id)
        clean = {k: v for k, v in body.items() if not k.startswith("_")}
        with self._lock:
            with self.transaction() as conn:
                row = conn.execute("SELECT rev FROM local_docs WHERE doc_id = ?", (key,)).fetchone()
                counter = int(row['rev'].split("-", 1)[1]) + 1 if row else 1
                rev = f"0-{counter}"
                conn.execute("INSERT INTO local_docs(doc_id, rev, body) VALUES (?, ?, ?) "
                             "ON CONFLICT(doc_id) DO UPDATE SET rev = excluded.rev, body = excluded.body",
                             (key, rev, _json_dumps(clean)))
        return {"ok": True, "id": LOCAL_PREFIX + key, "rev": rev}


# --- Transaction Context Manager Class (Helper for `with store.transaction():`) ---
class TransactionContextManager:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.store.get_connection()
        if not self.conn.in_transaction:
            self.conn.execute("BEGIN IMMEDIATE")
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.conn:
            logger.error("Transaction context: Connection is None in __exit__.")
            return False

        if self.is_outermost_transaction:
            if exc_type:
                logger.debug(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                             f"{exc_type.__name__} - {exc_val}")
                try:
                    self.conn.rollback()
                except sqlite3.Error as rb_err:
                    logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
            else:
                try:
                    self.conn.commit()
                except sqlite3.Error as commit_err:
                    logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}",
                                 exc_info=True)
                    try:
                        self.conn.rollback()
                    except sqlite3.Error as rb_err_after_commit_fail:
                        logger.critical(f"Rollback after failed commit also FAILED: {rb_err_after_commit_fail}",
                                        exc_info=True)
                    raise DocumentStoreError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Document_Store.py
########################################################################################################################
