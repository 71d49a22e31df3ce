# test_app_smoke.py
#
# Drives the Textual app headless against an in-memory store.
#
# Imports
import threading
#
# Third-Party Imports
import pytest
from textual.widgets import Button, Input, ListView, Static, Switch
#
# Local Imports
from atlas_board.app import AtlasBoardApp, build_arg_parser
from atlas_board.Catalog.Catalog_Library import CatalogService
from atlas_board.Constants import (
    ID_ATTACHMENT_PATH, ID_COMMENT_LIST, ID_COUNTRY_CAPITAL, ID_COUNTRY_LIST, ID_COUNTRY_NAME, ID_COUNTRY_REGION,
    ID_COUNTRY_SAVE, ID_MESSAGE_LIST, ID_MESSAGE_TITLE, ID_ONLINE_SWITCH, ID_TOP_LIKED,
)
from atlas_board.Event_Handlers import catalog_events, sync_events
from atlas_board.State.Board_State import BoardState
#
#######################################################################################################################
#
# Functions:

@pytest.fixture
def catalog(mem_store):
    service = CatalogService(mem_store)
    service.ensure_indexes()
    return service


@pytest.fixture
def board_app(mem_store, catalog):
    france = catalog.create_country({"name": "France", "region": "Europe"})
    catalog.create_message({"title": "[Breaking] news", "content": "Brackets stay literal",
                            "countryId": france["_id"], "likes": 2})
    state = BoardState(catalog)
    return AtlasBoardApp(state, store=mem_store, start_online=False, configure_logging=False)


async def _settle(app, pilot):
    await app.workers.wait_for_complete()
    await pilot.pause()


async def test_board_renders_local_data(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        countries = board_app.query_one(f"#{ID_COUNTRY_LIST}", ListView)
        messages = board_app.query_one(f"#{ID_MESSAGE_LIST}", ListView)
        assert len(countries.children) == 1
        assert len(messages.children) == 1
        assert board_app.board_state.top_liked[0]["title"] == "[Breaking] news"
        assert board_app.query_one(f"#{ID_TOP_LIKED}", Static) is not None


async def test_country_form_saves_through_button(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        board_app.query_one(f"#{ID_COUNTRY_NAME}", Input).value = "Japan"
        board_app.query_one(f"#{ID_COUNTRY_REGION}", Input).value = "Asia"
        board_app.query_one(f"#{ID_COUNTRY_SAVE}", Button).press()
        await pilot.pause()

        names = {c["name"] for c in board_app.board_state.countries}
        assert names == {"France", "Japan"}
        assert board_app.query_one(f"#{ID_COUNTRY_NAME}", Input).value == ""


async def test_empty_country_form_is_rejected(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        await catalog_events.handle_country_save(board_app)
        await pilot.pause()
        assert len(board_app.board_state.countries) == 1


async def test_search_filters_board(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        await catalog_events.handle_search_changed(board_app, "zzz")
        await pilot.pause()
        assert board_app.board_state.countries == []
        assert len(board_app.query_one(f"#{ID_COUNTRY_LIST}", ListView).children) == 0


async def test_online_switch_without_remote_stays_offline(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        board_app.query_one(f"#{ID_ONLINE_SWITCH}", Switch).value = True
        await pilot.pause()
        await _settle(board_app, pilot)
        assert board_app.board_state.online is False
        assert board_app.board_state.controller is None


async def test_edit_country_through_button(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        board_app.query_one(f"#{ID_COUNTRY_LIST}", ListView).index = 0
        await pilot.pause()
        await catalog_events.handle_country_edit(board_app)
        await pilot.pause()
        state = board_app.board_state
        assert state.editing_country_id == state.countries[0]["_id"]
        assert board_app.query_one(f"#{ID_COUNTRY_NAME}", Input).value == "France"

        board_app.query_one(f"#{ID_COUNTRY_CAPITAL}", Input).value = "Paris"
        await catalog_events.handle_country_save(board_app)
        await pilot.pause()
        assert state.editing_country_id is None
        assert [(c["name"], c.get("capital")) for c in state.countries] == [("France", "Paris")]


async def test_edit_button_twice_cancels(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        message_id = board_app.board_state.messages[0]["_id"]
        await catalog_events.handle_message_highlighted(board_app, message_id)
        await catalog_events.handle_message_edit(board_app)
        assert board_app.board_state.editing_message_id == message_id
        assert board_app.query_one(f"#{ID_MESSAGE_TITLE}", Input).value == "[Breaking] news"
        await catalog_events.handle_message_edit(board_app)
        assert board_app.board_state.editing_message_id is None
        assert board_app.query_one(f"#{ID_MESSAGE_TITLE}", Input).value == ""


async def test_comment_delete_through_list(board_app, catalog):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        state = board_app.board_state
        message_id = state.messages[0]["_id"]
        catalog.create_comment({"messageId": message_id, "author": "Ada", "content": "First!"})
        state.refresh_messages()
        await catalog_events.handle_message_highlighted(board_app, message_id)
        await pilot.pause()
        comment_list = board_app.query_one(f"#{ID_COMMENT_LIST}", ListView)
        assert len(comment_list.children) == 1
        comment_list.index = 0
        await pilot.pause()

        await catalog_events.handle_comment_delete(board_app)
        await pilot.pause()
        assert state.comments[message_id] == []
        assert catalog.comments_for_message(message_id) == []


async def test_attach_file_by_path(board_app, tmp_path):
    note = tmp_path / "notes.txt"
    note.write_text("Hello from the field", encoding="utf-8")
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        state = board_app.board_state
        message_id = state.messages[0]["_id"]
        await catalog_events.handle_message_highlighted(board_app, message_id)
        board_app.query_one(f"#{ID_ATTACHMENT_PATH}", Input).value = str(note)
        await catalog_events.handle_attach_file(board_app)
        await pilot.pause()

        assert "notes.txt" in state.messages[0]["_attachments"]
        assert board_app.query_one(f"#{ID_ATTACHMENT_PATH}", Input).value == ""
        assert "Hello from the field" in state.attachment_preview(message_id, "notes.txt")


async def test_attach_missing_file_changes_nothing(board_app, tmp_path):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        await catalog_events.handle_message_highlighted(board_app, board_app.board_state.messages[0]["_id"])
        board_app.query_one(f"#{ID_ATTACHMENT_PATH}", Input).value = str(tmp_path / "missing.txt")
        await catalog_events.handle_attach_file(board_app)
        assert not board_app.board_state.messages[0].get("_attachments")


async def test_worker_thread_ui_calls_do_not_wait_for_the_loop(board_app):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
        calls = []
        worker = threading.Thread(target=lambda: sync_events.run_on_ui(board_app, calls.append, "rendered"))
        worker.start()
        # The loop is blocked here, as it is while shutdown joins the replication thread
        worker.join(2)
        assert not worker.is_alive()
        assert calls == []
        await pilot.pause()
        assert calls == ["rendered"]


async def test_unmount_closes_store(board_app, mem_store):
    async with board_app.run_test() as pilot:
        await _settle(board_app, pilot)
    assert mem_store.is_closed


def test_arg_parser():
    args = build_arg_parser().parse_args(["--seed-sample-data", "--offline", "--seed", "3"])
    assert args.seed_sample_data and args.offline and args.seed == 3

#
# End of test_app_smoke.py
#######################################################################################################################
