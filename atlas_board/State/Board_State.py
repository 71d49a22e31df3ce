# Board_State.py
# Description: Injectable view-model for the catalog board (collections, filters, forms, online flag)
#
# Imports
import threading
from typing import Any, Callable, Dict, List, Optional, Set
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from ..Catalog.Catalog_Library import CatalogService
from ..DB.Document_Store import ConflictError, DocumentStoreError, InputError
from ..DB.Sync_Client import ReplicationController, ReplicationEvent
#
########################################################################################################################
#
# Functions:

NotifyCallable = Callable[[str, str], None]

QUERY_TARGETS = ("countries", "messages", "comments", "top_liked", "first_comment_by_message")
COUNTRY_REQUIRED = ("name", "region")
MESSAGE_REQUIRED = ("title", "content", "countryId")
COMMENT_REQUIRED = ("content", "author")


def _missing_fields(form: Dict[str, Any], required) -> List[str]:
    return [f for f in required if form.get(f) is None or (isinstance(form.get(f), str) and not form[f].strip())]


class BoardState:
    """
    Holds everything the board shows. All persisted mutations go through the CatalogService.

    `notify(message, severity)` receives user-facing alerts; without it they are appended
    to `alerts`. `controller_factory()` builds a ReplicationController when going online.
    """

    def __init__(self, catalog: Optional[CatalogService],
                 controller_factory: Optional[Callable[[], ReplicationController]] = None,
                 notify: Optional[NotifyCallable] = None):
        self.catalog = catalog
        self.controller_factory = controller_factory
        self._notify = notify
        self.alerts: List[tuple] = []

        # Collections and derived views
        self.countries: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self.top_liked: List[Dict[str, Any]] = []
        self.first_comment_by_message: Dict[str, Dict[str, Any]] = {}

        # Filters
        self.region_filter: Optional[str] = None
        self.search_text: str = ""
        self.selected_country_id: Optional[str] = None
        self.active_message_id: Optional[str] = None

        # Forms and edit pointers
        self.comment_drafts: Dict[str, Dict[str, str]] = {}
        self.editing_country_id: Optional[str] = None
        self.editing_message_id: Optional[str] = None
        self.editing_comment_id: Optional[str] = None

        self.liked_message_ids: Set[str] = set()

        # Replication
        self.online = False
        self.controller: Optional[ReplicationController] = None
        self._controller_disposers: List[Callable[[], None]] = []
        self.on_refreshed: Optional[Callable[[], None]] = None

        self._seq_lock = threading.Lock()
        self._query_seq = 0
        self._applied_seq: Dict[str, int] = {}

    # --- Alerts ---
    def alert(self, message: str, severity: str = "error"):
        logger.log("WARNING" if severity != "information" else "INFO", f"Alert ({severity}): {message}")
        if self._notify is not None:
            self._notify(message, severity)
        else:
            self.alerts.append((severity, message))

    def _available(self) -> bool:
        if self.catalog is None:
            logger.error("Catalog store is not open; operation skipped.")
            return False
        return True

    def _run_command(self, description: str, func: Callable[[], Any]) -> Any:
        """Runs a catalog command, turning expected failures into alerts."""
        if not self._available():
            return None
        try:
            return func()
        except ConflictError as e:
            logger.error(f"Conflict while trying to {description}: {e}")
            self.alert(f"Could not {description}: it was changed elsewhere. Reload and try again.", "warning")
        except InputError as e:
            logger.warning(f"Invalid input while trying to {description}: {e}")
            self.alert(f"Could not {description}: {e}", "error")
        except DocumentStoreError as e:
            logger.error(f"Store error while trying to {description}: {e}")
            self.alert(f"Could not {description}: local database error.", "error")
        return None

    # --- Query sequencing ---
    def next_query_seq(self) -> int:
        with self._seq_lock:
            self._query_seq += 1
            return self._query_seq

    def apply_query_result(self, target: str, seq: int, result: Any) -> bool:
        """
        Stores `result` into `target` unless a newer query has already been applied there.

        Returns:
            True if the result was applied, False if it was stale and discarded.
        """
        if target not in QUERY_TARGETS:
            raise ValueError(f"Unknown query target: {target}")
        with self._seq_lock:
            if seq < self._applied_seq.get(target, 0):
                logger.debug(f"Discarding stale {target} result #{seq} (applied #{self._applied_seq[target]})")
                return False
            self._applied_seq[target] = seq
            setattr(self, target, result)
        return True

    # --- Refreshing ---
    def refresh_countries(self, seq: Optional[int] = None) -> bool:
        if not self._available():
            return False
        seq = seq if seq is not None else self.next_query_seq()
        try:
            result = self.catalog.search_countries(self.search_text, self.region_filter)
        except DocumentStoreError as e:
            logger.error(f"Failed to load countries: {e}")
            return False
        return self.apply_query_result("countries", seq, result)

    def refresh_messages(self, seq: Optional[int] = None) -> bool:
        if not self._available():
            return False
        seq = seq if seq is not None else self.next_query_seq()
        try:
            messages = self.catalog.search_messages(self.search_text, self.selected_country_id)
            message_ids = [m["_id"] for m in messages]
            comments = {mid: self.catalog.comments_for_message(mid) for mid in message_ids}
            first_comments = self.catalog.first_comment_per_message(message_ids)
            top_liked = self.catalog.top_liked_messages(10)
        except DocumentStoreError as e:
            logger.error(f"Failed to load messages: {e}")
            return False
        applied = self.apply_query_result("messages", seq, messages)
        self.apply_query_result("comments", seq, comments)
        self.apply_query_result("first_comment_by_message", seq, first_comments)
        self.apply_query_result("top_liked", seq, top_liked)
        return applied

    def refresh_all(self):
        seq = self.next_query_seq()
        self.refresh_countries(seq)
        self.refresh_messages(seq)
        if self.on_refreshed is not None:
            self.on_refreshed()

    def set_region_filter(self, region: Optional[str]):
        self.region_filter = region or None
        self.refresh_countries()

    def set_search_text(self, text: str):
        self.search_text = text or ""
        seq = self.next_query_seq()
        self.refresh_countries(seq)
        self.refresh_messages(seq)

    def select_country(self, country_id: Optional[str]):
        self.selected_country_id = country_id
        self.refresh_messages()

    # --- Edit pointers ---
    def begin_edit(self, kind: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Points the `kind` form at an existing document and returns it for pre-filling."""
        attr = self._edit_attr(kind)
        doc = self._run_command(f"load the {kind}", lambda: self.catalog.get_by_id(doc_id))
        if doc is None:
            if self.catalog is not None:
                self.alert(f"The {kind} no longer exists.", "warning")
            return None
        setattr(self, attr, doc_id)
        if kind == "comment":
            draft = self.comment_draft(doc.get("messageId", ""))
            draft.update(content=doc.get("content", ""), author=doc.get("author", ""))
        return doc

    def cancel_edit(self, kind: str):
        setattr(self, self._edit_attr(kind), None)

    @staticmethod
    def _edit_attr(kind: str) -> str:
        if kind not in ("country", "message", "comment"):
            raise ValueError(f"Unknown edit kind: {kind}")
        return f"editing_{kind}_id"

    def comment_draft(self, message_id: str) -> Dict[str, str]:
        """Returns the comment form for a message, creating it on first use."""
        if message_id not in self.comment_drafts:
            self.comment_drafts[message_id] = {"content": "", "author": ""}
        return self.comment_drafts[message_id]

    # --- Likes ---
    def toggle_like(self, message_id: str) -> Optional[Dict[str, Any]]:
        if message_id in self.liked_message_ids:
            updated = self._run_command("unlike the message", lambda: self.catalog.unlike_message(message_id))
            if updated is not None:
                self.liked_message_ids.discard(message_id)
        else:
            updated = self._run_command("like the message", lambda: self.catalog.like_message(message_id))
            if updated is not None:
                self.liked_message_ids.add(message_id)
        if updated is not None:
            self.refresh_messages()
        return updated

    # --- Forms ---
    def submit_country_form(self, form: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        missing = _missing_fields(form, COUNTRY_REQUIRED)
        if missing:
            self.alert(f"Please fill in: {', '.join(missing)}", "warning")
            return None
        if self.editing_country_id:
            doc_id = self.editing_country_id
            saved = self._run_command("update the country", lambda: self.catalog.update(doc_id, form))
        else:
            saved = self._run_command("create the country", lambda: self.catalog.create_country(form))
        if saved is not None:
            self.editing_country_id = None
            self.refresh_countries()
        return saved

    def submit_message_form(self, form: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        form = dict(form)
        editing = self.editing_message_id
        if not editing and not form.get("countryId") and self.selected_country_id:
            form["countryId"] = self.selected_country_id
        # An edited message keeps its country unless the form names another one
        required = [f for f in MESSAGE_REQUIRED if not (editing and f == "countryId")]
        missing = _missing_fields(form, required)
        if missing:
            self.alert(f"Please fill in: {', '.join(missing)}", "warning")
            return None
        if editing:
            if not form.get("countryId"):
                form.pop("countryId", None)
            saved = self._run_command("update the message", lambda: self.catalog.update(editing, form))
        else:
            saved = self._run_command("create the message", lambda: self.catalog.create_message(form))
        if saved is not None:
            self.editing_message_id = None
            self.refresh_messages()
        return saved

    def submit_comment_form(self, message_id: str) -> Optional[Dict[str, Any]]:
        draft = self.comment_draft(message_id)
        missing = _missing_fields(draft, COMMENT_REQUIRED)
        if missing:
            self.alert(f"Please fill in: {', '.join(missing)}", "warning")
            return None
        fields = dict(draft, messageId=message_id)
        if self.editing_comment_id:
            doc_id = self.editing_comment_id
            saved = self._run_command("update the comment", lambda: self.catalog.update(doc_id, fields))
        else:
            saved = self._run_command("add the comment", lambda: self.catalog.create_comment(fields))
        if saved is not None:
            self.editing_comment_id = None
            self.comment_drafts[message_id] = {"content": "", "author": ""}
            self.refresh_messages()
        return saved

    # --- Deletes and attachments ---
    def delete_country(self, country_id: str) -> bool:
        deleted = self._run_command("delete the country", lambda: self.catalog.delete(country_id))
        if deleted:
            if self.selected_country_id == country_id:
                self.selected_country_id = None
            self.refresh_all()
        return bool(deleted)

    def delete_message(self, message_id: str) -> bool:
        deleted = self._run_command("delete the message", lambda: self.catalog.delete_message(message_id))
        if deleted:
            self.liked_message_ids.discard(message_id)
            if self.active_message_id == message_id:
                self.active_message_id = None
            self.comment_drafts.pop(message_id, None)
            self.refresh_messages()
        return bool(deleted)

    def delete_comment(self, comment_id: str) -> bool:
        deleted = self._run_command("delete the comment", lambda: self.catalog.delete(comment_id))
        if deleted:
            if self.editing_comment_id == comment_id:
                self.editing_comment_id = None
            self.refresh_messages()
        return bool(deleted)

    def attach_file(self, message_id: str, name: str, data: bytes, content_type: str) -> Optional[Dict[str, Any]]:
        result = self._run_command("attach the file",
                                   lambda: self.catalog.put_attachment(message_id, name, data, content_type))
        if result is not None:
            self.refresh_messages()
        return result

    def attachment_preview(self, message_id: str, name: str, max_chars: int = 200) -> Optional[str]:
        """Short description of an attachment; text attachments show their first characters."""
        att = self._run_command("read the attachment", lambda: self.catalog.get_attachment(message_id, name))
        if att is None:
            return None
        summary = f"{name} ({att['content_type']}, {len(att['data'])} bytes)"
        if att["content_type"].startswith("text/"):
            text = att["data"].decode("utf-8", errors="replace")
            summary += ": " + (text[:max_chars] + "..." if len(text) > max_chars else text)
        return summary

    # --- Online / offline ---
    def set_online(self, flag: bool):
        """Starts or cancels continuous replication. Repeating the current state is a no-op."""
        if flag:
            if self.online and self.controller is not None and self.controller.state == "running":
                return
            if self.controller_factory is None:
                self.alert("No remote database is configured; staying offline.", "warning")
                return
            self._stop_replication()
            controller = self.controller_factory()
            self._controller_disposers = [
                controller.on("change", self._on_replication_change),
                controller.on("error", self._on_replication_error),
                controller.on("denied", self._on_replication_denied),
            ]
            self.controller = controller
            self.online = True
            controller.start()
            logger.info("Board is online; replication started.")
        else:
            if not self.online and self.controller is None:
                return
            self._stop_replication()
            self.online = False
            logger.info("Board is offline; replication cancelled.")

    def _stop_replication(self):
        for dispose in self._controller_disposers:
            dispose()
        self._controller_disposers = []
        if self.controller is not None:
            self.controller.cancel()
            self.controller = None

    def _on_replication_change(self, event: ReplicationEvent):
        if event.direction == "pull":
            logger.debug(f"Replication pulled {len(event.docs)} revision(s); refreshing.")
            self.refresh_all()

    def _on_replication_error(self, event: ReplicationEvent):
        logger.warning(f"Replication error (will retry): {event.error}")

    def _on_replication_denied(self, event: ReplicationEvent):
        ids = ", ".join(str(d.get("id")) for d in event.docs)
        reasons = "; ".join(str(d.get("reason")) for d in event.docs if d.get("reason"))
        self.alert(f"The server rejected changes to {ids}" + (f": {reasons}" if reasons else ""), "error")

    def shutdown(self):
        """Cancels replication. Call before closing the store."""
        self._stop_replication()
        self.online = False

#
# End of Board_State.py
########################################################################################################################
