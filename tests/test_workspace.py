import asyncio
import itertools

import pytest

from common.events import NoticeEvent
from wordsmith.errors import ServerError, ValidationError
from wordsmith.generation import GenerationState
from wordsmith.templates import NormalizedTemplate, ThemeForm
from wordsmith.usage import UsageStore
from wordsmith.workspace import WritingWorkspace, format_saved_time


def make_workspace(client, backend, events=None, **kwargs):
    return WritingWorkspace(
        client,
        backend=backend,
        model="test-model",
        on_event=events.append if events is not None else None,
        debounce_s=0.01,
        **kwargs,
    )


def test_edits_save_merged_payload(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "hello", "extra": {"keep": True}})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        assert ws.text == "hello"
        assert ws.save_status() == "Saved just now"

        ws.set_prompt("hello world")
        assert ws.is_dirty
        assert ws.save_status() == "Unsaved changes"
        await ws.flush()
        return ws

    ws = asyncio.run(scenario())

    _, fields, expected = fake_client.update_calls[-1]
    assert expected == 1
    payload = fields["payload"]
    assert payload["prompt"] == "hello world"
    assert payload["extra"] == {"keep": True}
    assert payload["settings"]["temperature"] == 0.7
    assert payload["template_name"] is None
    assert payload["chat_mode"] is False
    assert not ws.is_dirty
    assert ws.sessions[0].version == 2
    assert ws.session.version == 2


def test_reverting_to_saved_text_drops_pending_save(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "hello"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        ws.set_prompt("changed")
        assert ws.scheduler.has_pending("s1")
        ws.set_prompt("hello")
        assert not ws.scheduler.has_pending("s1")
        await ws.flush()

    asyncio.run(scenario())
    assert fake_client.update_calls == []


def test_settings_template_and_chat_mode_changes_are_saved(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "p"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        ws.update_settings(temperature="1.2", stop="END\n\n###\n")
        ws.set_template("chatml")
        ws.set_theme("dark")
        ws.set_chat_mode(True)
        await ws.flush()

    asyncio.run(scenario())

    payload = fake_client.sessions["s1"].payload
    assert payload["settings"]["temperature"] == 1.2
    assert payload["settings"]["stop"] == ["END", "###"]
    assert payload["template_name"] == "chatml"
    assert payload["theme_name"] == "dark"
    assert payload["chat_mode"] is True


def test_generate_saves_result_and_undo_restores(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "Hello {predict}"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend(["world"]))
        await ws.load_sessions()
        await ws.open_session("s1")
        result = await ws.generate()
        await ws.flush()
        assert result.state == GenerationState.COMPLETED
        assert ws.text == "Hello world"
        assert fake_client.sessions["s1"].payload["prompt"] == "Hello world"

        assert ws.can_undo
        ws.undo()
        await ws.flush()
        return ws

    ws = asyncio.run(scenario())

    assert ws.text == "Hello {predict}"
    assert ws.can_redo
    assert fake_client.sessions["s1"].payload["prompt"] == "Hello {predict}"


def test_switching_sessions_is_refused_while_generating(fake_client, fake_backend, events):
    fake_client.add_session("s1")
    fake_client.add_session("s2")

    async def scenario():
        ws = make_workspace(fake_client, fake_backend(), events)
        await ws.load_sessions()
        await ws.open_session("s1")
        ws.engine.state = GenerationState.GENERATING
        opened = await ws.open_session("s2")
        ws.engine.state = GenerationState.IDLE
        return ws, opened

    ws, opened = asyncio.run(scenario())

    assert opened is None
    assert ws.active_session_id == "s1"
    assert events[-1] == NoticeEvent(level="info", message="Stop generation before switching sessions.")


def test_switching_sessions_evicts_generation_history(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "A"})
    fake_client.add_session("s2", payload={"prompt": "B"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend(["!"]))
        await ws.load_sessions()
        await ws.open_session("s1")
        await ws.generate()
        assert ws.can_undo
        await ws.open_session("s2")
        await ws.flush()
        return ws

    ws = asyncio.run(scenario())

    assert ws.text == "B"
    assert not ws.can_undo
    assert "s1" not in ws.histories
    assert fake_client.sessions["s1"].payload["prompt"] == "A!"


def test_conflict_keeps_local_text_until_reload(fake_client, fake_backend, events):
    fake_client.add_session("s1", payload={"prompt": "original"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend(), events)
        await ws.load_sessions()
        await ws.open_session("s1")
        fake_client.bump("s1", prompt="server text")

        ws.set_prompt("local text")
        await ws.flush()
        assert ws.text == "local text"
        assert ws.scheduler.is_blocked("s1")
        assert ws.sessions[0].version == 2

        await ws.reload_from_server()
        return ws

    ws = asyncio.run(scenario())

    conflict = [e for e in events if isinstance(e, NoticeEvent) and e.action == "reload"]
    assert len(conflict) == 1
    assert conflict[0].role == "alert"
    assert ws.text == "server text"
    assert not ws.is_dirty
    assert not ws.scheduler.is_blocked("s1")
    assert ws.scheduler.confirmed_version("s1") == 2


def test_rename_conflict_routes_to_conflict_handler(fake_client, fake_backend, events):
    fake_client.add_session("s1")

    async def scenario():
        ws = make_workspace(fake_client, fake_backend(), events)
        await ws.load_sessions()
        fake_client.bump("s1", prompt="elsewhere")
        return await ws.rename_session("s1", "New name")

    assert asyncio.run(scenario()) is None
    assert any(isinstance(e, NoticeEvent) and e.message == "Session changed on the server." for e in events)


def test_rename_updates_name_and_confirmed_version(fake_client, fake_backend):
    fake_client.add_session("s1", name="Old")

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        await ws.rename_session("s1", "  New  ")
        ws.set_prompt("after rename")
        await ws.flush()
        return ws

    ws = asyncio.run(scenario())

    assert fake_client.sessions["s1"].name == "New"
    assert ws.sessions[0].name == "New"
    assert fake_client.update_calls[-1][2] == 2
    assert fake_client.sessions["s1"].payload["prompt"] == "after rename"


def test_rename_during_conflict_keeps_saves_blocked(fake_client, fake_backend):
    fake_client.add_session("s1", name="Old", payload={"prompt": "original"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        fake_client.bump("s1", prompt="other writer")
        ws.set_prompt("local edit")
        await ws.flush()

        assert await ws.rename_session("s1", "Renamed") is not None
        ws.set_prompt("local edit 2")
        await ws.flush()

        assert fake_client.sessions["s1"].payload["prompt"] == "other writer"
        assert fake_client.sessions["s1"].name == "Renamed"
        assert ws.scheduler.is_blocked("s1")
        assert ws.scheduler.confirmed_version("s1") == 1

        await ws.reload_from_server()
        return ws

    ws = asyncio.run(scenario())

    assert len(fake_client.update_calls) == 2
    assert fake_client.update_calls[1][1:] == ({"name": "Renamed"}, 2)
    assert ws.text == "other writer"
    assert ws.scheduler.confirmed_version("s1") == 3
    assert not ws.scheduler.is_blocked("s1")


def test_blank_session_name_is_rejected(fake_client, fake_backend):
    ws = make_workspace(fake_client, fake_backend())

    with pytest.raises(ValidationError, match="Enter a session name."):
        asyncio.run(ws.create_session("   "))


def test_create_and_delete_active_session(fake_client, fake_backend):
    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        session = await ws.create_session("Story")
        assert ws.active_session_id == session.id
        assert ws.settings.max_tokens == 512
        deleted = await ws.delete_session(session.id)
        return ws, deleted

    ws, deleted = asyncio.run(scenario())

    assert deleted
    assert ws.session is None
    assert ws.text == ""
    assert ws.sessions == []
    assert ws.save_status() is None


def test_clone_opens_the_copy(fake_client, fake_backend):
    fake_client.add_session("s1", name="Draft", payload={"prompt": "text"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        return ws, await ws.clone_session("s1")

    ws, clone = asyncio.run(scenario())

    assert clone.name == "Draft (copy)"
    assert ws.active_session_id == clone.id
    assert ws.text == "text"


def test_sessions_sorted_by_last_use_with_server_order_ties(fake_client, fake_backend):
    for session_id in ("a", "b", "c", "d"):
        fake_client.add_session(session_id, name=session_id)
    counter = itertools.count(1)

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        ws.usage = UsageStore(clock=lambda: next(counter))
        await ws.load_sessions()
        await ws.open_session("c")
        await ws.open_session("a")
        return ws

    ws = asyncio.run(scenario())

    assert [item.id for item in ws.sorted_sessions()] == ["a", "c", "b", "d"]


def test_usage_store_persists_to_disk(tmp_path):
    path = tmp_path / "usage.json"
    store = UsageStore(path, clock=lambda: 42.0)
    store.touch("s1", "Draft")

    reloaded = UsageStore(path)
    assert reloaded.last_used_at("s1") == 42.0
    assert reloaded.entries["s1"].name == "Draft"


def test_template_selection_follows_create_rename_and_delete(fake_client, fake_backend):
    fake_client.add_session("s1")

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")

        await ws.save_template(NormalizedTemplate(name="chatml", user_prefix="<u>"))
        assert ws.template_name == "chatml"
        assert ws.template.user_prefix == "<u>"

        await ws.save_template(
            NormalizedTemplate(name="chatml-v2", user_prefix="<user>"), editing="chatml"
        )
        assert ws.template_name == "chatml-v2"
        assert ws.template.user_prefix == "<user>"

        await ws.delete_template("chatml-v2")
        return ws

    ws = asyncio.run(scenario())

    assert ws.template_name is None
    assert ws.templates == []
    assert ("update_template", "chatml", 1) in fake_client.calls


def test_blank_template_name_is_rejected(fake_client, fake_backend):
    ws = make_workspace(fake_client, fake_backend())

    with pytest.raises(ValidationError, match="Enter a template name."):
        asyncio.run(ws.save_template(NormalizedTemplate(name=" ")))


def test_theme_create_selects_when_none_selected(fake_client, fake_backend):
    fake_client.add_session("s1")

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        await ws.save_theme(ThemeForm(name="dark", class_name="theme-dark", css=".x{}"))
        return ws

    ws = asyncio.run(scenario())

    assert ws.theme_name == "dark"
    assert ws.theme.class_name == "theme-dark"
    assert fake_client.themes["dark"].css == ".x{}"


def test_template_block_requires_markers(fake_client, fake_backend):
    ws = make_workspace(fake_client, fake_backend())

    with pytest.raises(ValidationError, match="User markers missing in template."):
        ws.insert_template_block("user")


def test_search_and_replace_edit_the_buffer(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "cat Cat cAt"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        assert len(ws.find("cat").matches) == 3
        assert ws.navigate_match("next").start == 4
        cursor = ws.replace_current("dog")
        assert ws.text == "cat dog cAt"
        assert cursor == 7
        ws.replace_all("cow")
        await ws.flush()
        return ws

    ws = asyncio.run(scenario())

    assert ws.text == "cow dog cow"
    assert fake_client.sessions["s1"].payload["prompt"] == "cow dog cow"


def test_invalid_regex_does_not_touch_buffer(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "abc"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        result = ws.find("(", use_regex=True)
        ws.replace_all("x")
        return ws, result

    ws, result = asyncio.run(scenario())

    assert result.error.startswith("Invalid regular expression")
    assert ws.text == "abc"


def test_placeholder_insert_and_prompt_chunks(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "Hello world"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        await ws.load_sessions()
        await ws.open_session("s1")
        cursor = ws.insert_placeholder("{fill}", 5)
        return ws, cursor

    ws, cursor = asyncio.run(scenario())

    assert ws.text == "Hello{fill} world"
    assert cursor == 11
    summary = ws.prompt_chunks()
    assert [(c.kind, c.label) for c in summary.chunks] == [
        ("text", "Hello"),
        ("placeholder", "{fill}"),
        ("text", " world"),
    ]


def test_capabilities_gate_token_counting(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "one two three"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        assert await ws.count_tokens() is None
        await ws.refresh_capabilities()
        await ws.load_sessions()
        await ws.open_session("s1")
        return ws, await ws.count_tokens()

    ws, count = asyncio.run(scenario())

    assert not ws.unsupported
    assert count == 3
    assert ("count_tokens", "openai", "test-model", "one two three") in fake_client.calls


def test_tokenize_uses_default_provider(fake_client, fake_backend):
    fake_client.add_session("s1", payload={"prompt": "one two"})

    async def scenario():
        ws = make_workspace(fake_client, fake_backend())
        assert await ws.tokenize() is None
        await ws.refresh_capabilities()
        await ws.load_sessions()
        await ws.open_session("s1")
        return await ws.tokenize(include_strings=True)

    result = asyncio.run(scenario())

    assert result["count"] == 2
    assert result["strings"] == ["one", "two"]
    assert ("tokenize", "openai", "test-model", "one two") in fake_client.calls


def test_unreachable_server_marks_workspace_offline(fake_client, fake_backend, events):
    fake_client.add_session("s1", payload={"prompt": "hello"})
    backend = fake_backend(["never"])

    async def scenario():
        ws = make_workspace(fake_client, backend, events)
        await ws.load_sessions()
        await ws.open_session("s1")
        fake_client.fail_with = ServerError("Request failed", status=None)
        with pytest.raises(ServerError):
            await ws.refresh_capabilities()
        assert not ws.online
        assert await ws.generate() is None

        fake_client.fail_with = None
        await ws.refresh_capabilities()
        return ws

    ws = asyncio.run(scenario())

    assert ws.online
    assert backend.calls == []
    assert any(isinstance(e, NoticeEvent) and e.message == "Chat completions unavailable." for e in events)


def test_format_saved_time():
    assert format_saved_time(100.0, 110.0) == "just now"
    assert format_saved_time(0.0, 125.0) == "2m ago"
    assert format_saved_time(0.0, 7300.0) == "2h ago"
