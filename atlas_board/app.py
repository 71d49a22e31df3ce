# atlas_board - Terminal board for countries, messages and comments
# Description: Main Textual application. Works against the local replica; replication runs in the background.
#
# Imports
import argparse
import logging
import logging.handlers
import random
from typing import Optional
#
# 3rd-Party Libraries
from loguru import logger as loguru_logger
from textual import on
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import (
    Button, Footer, Header, Input, Label, ListView, RichLog, Select, Static, Switch
)
#
# Local Imports
from .Catalog.Catalog_Library import CatalogService
from .Catalog.Sample_Data import populate_sample_catalog
from .Constants import (
    REGIONS, ALL_REGIONS_LABEL,
    ID_SEARCH_INPUT, ID_REGION_FILTER, ID_ONLINE_SWITCH, ID_COUNTRY_LIST, ID_MESSAGE_LIST, ID_TOP_LIKED,
    ID_SYNC_STATUS, ID_LOG_DISPLAY,
    ID_COUNTRY_NAME, ID_COUNTRY_REGION, ID_COUNTRY_CAPITAL, ID_COUNTRY_SAVE, ID_COUNTRY_DELETE,
    ID_MESSAGE_TITLE, ID_MESSAGE_CONTENT, ID_MESSAGE_SAVE, ID_MESSAGE_LIKE, ID_MESSAGE_DELETE,
    ID_COUNTRY_EDIT, ID_MESSAGE_EDIT, ID_COMMENT_AUTHOR, ID_COMMENT_CONTENT, ID_COMMENT_SAVE, ID_COMMENT_LIST,
    ID_COMMENT_EDIT, ID_COMMENT_DELETE, ID_ATTACHMENT_PATH, ID_ATTACHMENT_ADD, ID_ATTACHMENT_PREVIEW,
)
from .DB.Document_Store import DocumentStore
from .Event_Handlers import catalog_events, sync_events
from .Logging_Config import RichLogHandler, configure_application_logging
from .State.Board_State import BoardState
from .config import (
    load_settings, open_local_store, build_controller_factory, get_sync_settings, get_max_attachment_bytes,
)
#
########################################################################################################################
#
# Functions:

class AtlasBoardApp(App):
    """Country / message / comment board backed by a replicating local store."""

    TITLE = "Atlas Board"
    CSS = """
    #columns { height: 1fr; }
    .pane { width: 1fr; padding: 0 1; }
    ListView { height: 1fr; border: round $primary; }
    #top-liked { height: auto; border: round $secondary; }
    #comment-list { height: 6; }
    #attachment-preview { height: auto; max-height: 6; }
    #app-log-display { height: 8; border: round $panel; }
    """
    BINDINGS = [
        Binding("ctrl+q", "quit", "Quit App", show=True),
        Binding("ctrl+r", "refresh_board", "Refresh", show=True),
    ]

    def __init__(self, board_state: BoardState, store: Optional[DocumentStore] = None,
                 start_online: bool = False, seed_from_remote: bool = False, configure_logging: bool = True):
        super().__init__()
        self.board_state = board_state
        self.store = store
        self.start_online = start_online
        self.seed_from_remote = seed_from_remote
        self.configure_logging = configure_logging
        self.loguru_logger = loguru_logger
        self._rich_log_handler: Optional[RichLogHandler] = None
        if board_state._notify is None:
            board_state._notify = lambda message, severity: sync_events.notify_from_any_thread(self, message, severity)
        board_state.on_refreshed = lambda: sync_events.run_on_ui(self, catalog_events.render_board, self)

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="columns"):
            with Vertical(classes="pane"):
                yield Input(placeholder="Search countries and messages", id=ID_SEARCH_INPUT)
                yield Select([(r, r) for r in REGIONS], prompt=ALL_REGIONS_LABEL, id=ID_REGION_FILTER)
                yield ListView(id=ID_COUNTRY_LIST)
                yield Input(placeholder="Name", id=ID_COUNTRY_NAME)
                yield Input(placeholder="Region", id=ID_COUNTRY_REGION)
                yield Input(placeholder="Capital", id=ID_COUNTRY_CAPITAL)
                with Horizontal():
                    yield Button("Save country", id=ID_COUNTRY_SAVE, variant="primary")
                    yield Button("Edit", id=ID_COUNTRY_EDIT)
                    yield Button("Delete", id=ID_COUNTRY_DELETE, variant="error")
            with Vertical(classes="pane"):
                yield ListView(id=ID_MESSAGE_LIST)
                yield Input(placeholder="Title", id=ID_MESSAGE_TITLE)
                yield Input(placeholder="Content", id=ID_MESSAGE_CONTENT)
                with Horizontal():
                    yield Button("Post", id=ID_MESSAGE_SAVE, variant="primary")
                    yield Button("Like", id=ID_MESSAGE_LIKE)
                    yield Button("Edit", id=ID_MESSAGE_EDIT)
                    yield Button("Delete", id=ID_MESSAGE_DELETE, variant="error")
                yield Input(placeholder="Your name", id=ID_COMMENT_AUTHOR)
                yield Input(placeholder="Comment", id=ID_COMMENT_CONTENT)
                with Horizontal():
                    yield Button("Comment", id=ID_COMMENT_SAVE)
                    yield Button("Edit comment", id=ID_COMMENT_EDIT)
                    yield Button("Delete comment", id=ID_COMMENT_DELETE, variant="error")
                yield ListView(id=ID_COMMENT_LIST)
                with Horizontal():
                    yield Input(placeholder="File to attach", id=ID_ATTACHMENT_PATH)
                    yield Button("Attach", id=ID_ATTACHMENT_ADD)
                yield Static("No attachments", id=ID_ATTACHMENT_PREVIEW)
            with Vertical(classes="pane"):
                with Horizontal():
                    yield Label("Online ")
                    yield Switch(value=self.start_online, id=ID_ONLINE_SWITCH)
                yield Static("Offline", id=ID_SYNC_STATUS)
                yield Label("Top liked")
                yield Static("", id=ID_TOP_LIKED)
        yield RichLog(id=ID_LOG_DISPLAY, wrap=True, highlight=True)
        yield Footer()

    def on_mount(self) -> None:
        if self.configure_logging:
            configure_application_logging(self)
        self.loguru_logger.info("Atlas Board mounted.")
        self.run_worker(lambda: sync_events.seed_and_go_online(self), thread=True, group="sync", name="startup")

    def action_refresh_board(self) -> None:
        self.run_worker(self.board_state.refresh_all, thread=True, exclusive=True, group="refresh")

    # --- Event routing ---
    @on(Input.Submitted, f"#{ID_SEARCH_INPUT}")
    async def on_search_submitted(self, event: Input.Submitted) -> None:
        await catalog_events.handle_search_changed(self, event.value)

    @on(Select.Changed, f"#{ID_REGION_FILTER}")
    async def on_region_changed(self, event: Select.Changed) -> None:
        value = event.value if isinstance(event.value, str) else None
        await catalog_events.handle_region_changed(self, value)

    @on(ListView.Selected, f"#{ID_COUNTRY_LIST}")
    async def on_country_selected(self, event: ListView.Selected) -> None:
        await catalog_events.handle_country_selected(self, event.item.name if event.item else None)

    @on(ListView.Highlighted, f"#{ID_MESSAGE_LIST}")
    async def on_message_highlighted(self, event: ListView.Highlighted) -> None:
        await catalog_events.handle_message_highlighted(self, event.item.name if event.item else None)

    @on(Switch.Changed, f"#{ID_ONLINE_SWITCH}")
    async def on_online_switch_changed(self, event: Switch.Changed) -> None:
        await sync_events.handle_online_switch_changed(self, event.value)

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        handlers = {
            ID_COUNTRY_SAVE: catalog_events.handle_country_save,
            ID_COUNTRY_DELETE: catalog_events.handle_country_delete,
            ID_MESSAGE_SAVE: catalog_events.handle_message_save,
            ID_MESSAGE_LIKE: catalog_events.handle_like_pressed,
            ID_MESSAGE_DELETE: catalog_events.handle_message_delete,
            ID_COUNTRY_EDIT: catalog_events.handle_country_edit,
            ID_MESSAGE_EDIT: catalog_events.handle_message_edit,
            ID_COMMENT_SAVE: catalog_events.handle_comment_save,
            ID_COMMENT_EDIT: catalog_events.handle_comment_edit,
            ID_COMMENT_DELETE: catalog_events.handle_comment_delete,
            ID_ATTACHMENT_ADD: catalog_events.handle_attach_file,
        }
        handler = handlers.get(event.button.id)
        if handler is None:
            self.loguru_logger.warning(f"Unhandled button ID '{event.button.id}'.")
            return
        await handler(self)

    async def on_unmount(self) -> None:
        """Stop replication before the store goes away, then release logging resources."""
        logging.info("--- App Unmounting ---")
        self.board_state.shutdown()
        if self.store is not None:
            self.store.close()
        if self._rich_log_handler:
            await self._rich_log_handler.stop_processor()
            logging.getLogger().removeHandler(self._rich_log_handler)
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            if isinstance(handler, logging.handlers.RotatingFileHandler):
                handler.close()
                root_logger.removeHandler(handler)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="atlas-board", description="Local-first country/message board.")
    parser.add_argument("--seed-sample-data", action="store_true",
                        help="Generate sample countries, messages and comments into the local store.")
    parser.add_argument("--offline", action="store_true", help="Start without replication.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for --seed-sample-data.")
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    load_settings()
    store = open_local_store()
    if store is None:
        loguru_logger.error("Local store unavailable; the board will open read-only and empty.")
        catalog = None
    else:
        catalog = CatalogService(store, max_attachment_bytes=get_max_attachment_bytes())
        catalog.ensure_indexes()
        if args.seed_sample_data:
            populate_sample_catalog(catalog, rng=random.Random(args.seed))

    sync = get_sync_settings()
    factory = build_controller_factory(store) if store is not None else None
    state = BoardState(catalog, controller_factory=factory)
    app = AtlasBoardApp(state, store=store, start_online=sync["start_online"] and not args.offline,
                        seed_from_remote=sync["seed_from_remote"])
    app.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#
# End of app.py
#######################################################################################################################
