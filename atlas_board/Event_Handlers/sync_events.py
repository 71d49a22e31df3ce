# sync_events.py
# Description: Online/offline switching and replication plumbing for the app
#
# Imports
import threading
from typing import Any, Callable, TYPE_CHECKING
#
# 3rd-Party Imports
from loguru import logger
from textual.widgets import Static
from textual.css.query import QueryError
#
# Local Imports
from ..Constants import ID_SYNC_STATUS
from ..DB.Document_Store import DocumentStoreError
from ..remote_api.exceptions import RemoteAPIError
#
if TYPE_CHECKING:
    from ..app import AtlasBoardApp
#
########################################################################################################################
#
# Functions:

def run_on_ui(app: 'AtlasBoardApp', func: Callable[..., Any], *args) -> None:
    """
    Calls `func` on the UI thread. From worker threads the call is queued on the app's
    event loop without waiting, so a thread being joined by the UI never blocks on it.
    """
    if threading.current_thread() is threading.main_thread():
        func(*args)
        return
    loop = getattr(app, "_loop", None)
    if loop is None or loop.is_closed():
        logger.debug(f"Event loop gone; dropping UI call {getattr(func, '__name__', func)}.")
        return
    try:
        loop.call_soon_threadsafe(func, *args)
    except RuntimeError as e:
        logger.debug(f"Could not schedule UI call: {e}")


def notify_from_any_thread(app: 'AtlasBoardApp', message: str, severity: str = "information") -> None:
    run_on_ui(app, lambda: app.notify(message, severity=severity))


def update_sync_status(app: 'AtlasBoardApp') -> None:
    state = app.board_state
    if state.online and state.controller is not None:
        text = f"Online ({state.controller.state})"
        if state.controller.last_error is not None:
            text += " - retrying"
    else:
        text = "Offline"
    try:
        app.query_one(f"#{ID_SYNC_STATUS}", Static).update(text)
    except QueryError:
        logger.debug("Sync status widget not mounted.")


def seed_and_go_online(app: 'AtlasBoardApp') -> None:
    """Worker body: optional one-time pull, then continuous sync. Runs off the UI thread."""
    state = app.board_state
    if app.seed_from_remote and app.start_online and state.controller_factory is not None:
        controller = state.controller_factory()
        try:
            result = controller.pull_once()
            logger.info(f"Seeded local store from remote: {result.docs_written} revision(s).")
        except (RemoteAPIError, DocumentStoreError) as e:
            logger.warning(f"Initial pull from remote failed: {e}")
            notify_from_any_thread(app, "Could not reach the remote database; working offline copy.", "warning")
    if app.start_online:
        state.set_online(True)
    state.refresh_all()
    run_on_ui(app, update_sync_status, app)


def set_online_worker(app: 'AtlasBoardApp', value: bool) -> None:
    """Worker body for the online switch; cancelling joins the replication thread."""
    app.board_state.set_online(value)
    run_on_ui(app, update_sync_status, app)


async def handle_online_switch_changed(app: 'AtlasBoardApp', value: bool) -> None:
    logger.info(f"Online switch set to {value}")
    app.run_worker(lambda: set_online_worker(app, value), thread=True, exclusive=True, group="sync",
                   name="set-online")

#
# End of sync_events.py
########################################################################################################################
