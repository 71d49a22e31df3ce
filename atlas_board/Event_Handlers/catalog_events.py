# catalog_events.py
# Description: Handlers for the country / message / comment panes
#
# Imports
import mimetypes
from pathlib import Path
from typing import Dict, Optional, TYPE_CHECKING
#
# 3rd-Party Imports
from loguru import logger
from rich.text import Text
from textual.css.query import QueryError
from textual.widgets import Input, Label, ListItem, ListView, Static
#
# Local Imports
from ..Constants import (
    ID_COUNTRY_LIST, ID_MESSAGE_LIST, ID_COMMENT_LIST, ID_TOP_LIKED, ID_ATTACHMENT_PREVIEW,
    ID_COUNTRY_NAME, ID_COUNTRY_REGION, ID_COUNTRY_CAPITAL,
    ID_MESSAGE_TITLE, ID_MESSAGE_CONTENT, ID_COMMENT_AUTHOR, ID_COMMENT_CONTENT, ID_ATTACHMENT_PATH,
)
#
if TYPE_CHECKING:
    from ..app import AtlasBoardApp
#
########################################################################################################################
#
# Functions:

EDIT_FORM_FIELDS = {
    "country": {ID_COUNTRY_NAME: "name", ID_COUNTRY_REGION: "region", ID_COUNTRY_CAPITAL: "capital"},
    "message": {ID_MESSAGE_TITLE: "title", ID_MESSAGE_CONTENT: "content"},
    "comment": {ID_COMMENT_AUTHOR: "author", ID_COMMENT_CONTENT: "content"},
}


def _input_value(app: 'AtlasBoardApp', widget_id: str) -> str:
    return app.query_one(f"#{widget_id}", Input).value.strip()


def _clear_inputs(app: 'AtlasBoardApp', *widget_ids: str) -> None:
    for widget_id in widget_ids:
        app.query_one(f"#{widget_id}", Input).value = ""


def _fill_inputs(app: 'AtlasBoardApp', values: Dict[str, Optional[str]]) -> None:
    for widget_id, value in values.items():
        app.query_one(f"#{widget_id}", Input).value = "" if value is None else str(value)


def _highlighted_name(app: 'AtlasBoardApp', list_id: str) -> Optional[str]:
    item = app.query_one(f"#{list_id}", ListView).highlighted_child
    return item.name if item is not None else None


def _current_message_id(app: 'AtlasBoardApp') -> Optional[str]:
    return _highlighted_name(app, ID_MESSAGE_LIST) or app.board_state.active_message_id


def render_board(app: 'AtlasBoardApp') -> None:
    """Re-renders the lists from the board state. UI thread only."""
    state = app.board_state
    try:
        country_list = app.query_one(f"#{ID_COUNTRY_LIST}", ListView)
        message_list = app.query_one(f"#{ID_MESSAGE_LIST}", ListView)
        top_liked = app.query_one(f"#{ID_TOP_LIKED}", Static)
    except QueryError:
        logger.debug("Board widgets not mounted yet; skipping render.")
        return

    country_list.clear()
    for country in state.countries:
        marker = "> " if country["_id"] == state.selected_country_id else ""
        country_list.append(ListItem(Label(Text(f"{marker}{country.get('name')} ({country.get('region')})")),
                                     name=country["_id"]))

    message_list.clear()
    for message in state.messages:
        liked = "*" if message["_id"] in state.liked_message_ids else " "
        first = state.first_comment_by_message.get(message["_id"])
        first_text = f"  - {first.get('author')}: {first.get('content')}" if first else ""
        attachments = f" [{len(message['_attachments'])} file(s)]" if message.get("_attachments") else ""
        message_list.append(ListItem(
            Label(Text(f"[{liked}] {message.get('title')} ({message.get('likes', 0)} likes){attachments}{first_text}")),
            name=message["_id"]))

    # Titles are user text; Text keeps brackets from being read as markup
    top_liked.update(Text("\n".join(f"{m.get('likes', 0):>4}  {m.get('title')}" for m in state.top_liked)
                          or "No messages"))
    render_message_details(app)


def render_message_details(app: 'AtlasBoardApp') -> None:
    """Shows the comments and attachments of the active message."""
    state = app.board_state
    try:
        comment_list = app.query_one(f"#{ID_COMMENT_LIST}", ListView)
        preview = app.query_one(f"#{ID_ATTACHMENT_PREVIEW}", Static)
    except QueryError:
        logger.debug("Message detail widgets not mounted yet; skipping render.")
        return

    message_id = state.active_message_id
    comments = state.comments.get(message_id, []) if message_id else []
    comment_list.clear()
    for comment in comments:
        marker = "> " if comment["_id"] == state.editing_comment_id else ""
        comment_list.append(ListItem(Label(Text(f"{marker}{comment.get('author')}: {comment.get('content')}")),
                                     name=comment["_id"]))

    message = next((m for m in state.messages if m["_id"] == message_id), None)
    names = sorted((message or {}).get("_attachments") or {})
    lines = [state.attachment_preview(message_id, name) or name for name in names]
    preview.update(Text("\n".join(lines) or "No attachments"))


async def handle_message_highlighted(app: 'AtlasBoardApp', message_id: Optional[str]) -> None:
    if not message_id:
        return
    app.board_state.active_message_id = message_id
    render_message_details(app)


async def handle_search_changed(app: 'AtlasBoardApp', value: str) -> None:
    app.board_state.set_search_text(value)
    render_board(app)


async def handle_region_changed(app: 'AtlasBoardApp', value: Optional[str]) -> None:
    app.board_state.set_region_filter(value)
    render_board(app)


async def handle_country_selected(app: 'AtlasBoardApp', country_id: Optional[str]) -> None:
    logger.debug(f"Country selected: {country_id}")
    app.board_state.select_country(country_id)
    render_board(app)


def _toggle_edit(app: 'AtlasBoardApp', kind: str, doc_id: Optional[str]) -> None:
    """Loads a document into its form, or leaves edit mode when it is already being edited."""
    state = app.board_state
    form_fields = EDIT_FORM_FIELDS[kind]
    current = getattr(state, f"editing_{kind}_id")
    if current is not None and (doc_id is None or doc_id == current):
        state.cancel_edit(kind)
        _clear_inputs(app, *form_fields)
        app.notify(f"Stopped editing the {kind}.", severity="information")
        return
    if not doc_id:
        app.notify(f"Select a {kind} first.", severity="warning")
        return
    doc = state.begin_edit(kind, doc_id)
    if doc is None:
        return
    _fill_inputs(app, {widget_id: doc.get(field) for widget_id, field in form_fields.items()})
    app.notify(f"Editing the {kind}; save to apply or press Edit again to cancel.", severity="information")


async def handle_country_edit(app: 'AtlasBoardApp') -> None:
    _toggle_edit(app, "country", _highlighted_name(app, ID_COUNTRY_LIST))


async def handle_message_edit(app: 'AtlasBoardApp') -> None:
    _toggle_edit(app, "message", _current_message_id(app))


async def handle_comment_edit(app: 'AtlasBoardApp') -> None:
    _toggle_edit(app, "comment", _highlighted_name(app, ID_COMMENT_LIST))
    render_message_details(app)


async def handle_country_save(app: 'AtlasBoardApp') -> None:
    form = {
        "name": _input_value(app, ID_COUNTRY_NAME),
        "region": _input_value(app, ID_COUNTRY_REGION),
        "capital": _input_value(app, ID_COUNTRY_CAPITAL),
    }
    saved = app.board_state.submit_country_form(form)
    if saved is not None:
        _clear_inputs(app, ID_COUNTRY_NAME, ID_COUNTRY_REGION, ID_COUNTRY_CAPITAL)
        app.notify(f"Saved {saved['name']}", severity="information")
        render_board(app)


async def handle_country_delete(app: 'AtlasBoardApp') -> None:
    country_id = _highlighted_name(app, ID_COUNTRY_LIST)
    if not country_id:
        app.notify("Select a country first.", severity="warning")
        return
    if app.board_state.delete_country(country_id):
        render_board(app)


async def handle_message_save(app: 'AtlasBoardApp') -> None:
    form = {
        "title": _input_value(app, ID_MESSAGE_TITLE),
        "content": _input_value(app, ID_MESSAGE_CONTENT),
    }
    saved = app.board_state.submit_message_form(form)
    if saved is not None:
        _clear_inputs(app, ID_MESSAGE_TITLE, ID_MESSAGE_CONTENT)
        render_board(app)


async def handle_like_pressed(app: 'AtlasBoardApp') -> None:
    message_id = _current_message_id(app)
    if not message_id:
        app.notify("Select a message first.", severity="warning")
        return
    app.board_state.toggle_like(message_id)
    render_board(app)


async def handle_message_delete(app: 'AtlasBoardApp') -> None:
    message_id = _current_message_id(app)
    if not message_id:
        app.notify("Select a message first.", severity="warning")
        return
    if app.board_state.delete_message(message_id):
        app.notify("Message and its comments deleted.", severity="information")
        render_board(app)


async def handle_comment_save(app: 'AtlasBoardApp') -> None:
    message_id = _current_message_id(app)
    if not message_id:
        app.notify("Select a message to comment on.", severity="warning")
        return
    draft = app.board_state.comment_draft(message_id)
    draft["author"] = _input_value(app, ID_COMMENT_AUTHOR)
    draft["content"] = _input_value(app, ID_COMMENT_CONTENT)
    if app.board_state.submit_comment_form(message_id) is not None:
        _clear_inputs(app, ID_COMMENT_CONTENT)
        render_board(app)


async def handle_comment_delete(app: 'AtlasBoardApp') -> None:
    comment_id = _highlighted_name(app, ID_COMMENT_LIST)
    if not comment_id:
        app.notify("Select a comment first.", severity="warning")
        return
    if app.board_state.delete_comment(comment_id):
        app.notify("Comment deleted.", severity="information")
        render_board(app)


async def handle_attach_file(app: 'AtlasBoardApp') -> None:
    """Reads the file named in the path input and stores it on the current message."""
    message_id = _current_message_id(app)
    if not message_id:
        app.notify("Select a message to attach the file to.", severity="warning")
        return
    raw_path = _input_value(app, ID_ATTACHMENT_PATH)
    if not raw_path:
        app.notify("Enter the path of a file to attach.", severity="warning")
        return
    path = Path(raw_path).expanduser()
    if not path.is_file():
        app.notify(f"No such file: {path}", severity="warning")
        return
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.error(f"Could not read attachment {path}: {e}")
        app.notify(f"Could not read {path.name}.", severity="error")
        return
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    if app.board_state.attach_file(message_id, path.name, data, content_type) is not None:
        _clear_inputs(app, ID_ATTACHMENT_PATH)
        app.notify(f"Attached {path.name}.", severity="information")
        render_board(app)

#
# End of catalog_events.py
########################################################################################################################
