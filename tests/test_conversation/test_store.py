import json
import os
from datetime import timedelta
from pathlib import Path

import pytest

import switchboard.conversation.store as store_module
from switchboard.conversation.models import (
    Conversation,
    MediaPart,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserMedia,
    UserText,
    utcnow,
)
from switchboard.conversation.store import ConversationStore
from switchboard.exceptions import AmbiguousIdentifierError, ConversationNotFoundError, StoreError


def _store(tmp_path: Path, save_markdown: bool = True) -> ConversationStore:
    return ConversationStore(tmp_path / "conversations", save_markdown=save_markdown)


def _conversation(conversation_id: str, prompt: str = "hello", age_minutes: int = 0) -> Conversation:
    stamp = utcnow() - timedelta(minutes=age_minutes)
    return Conversation(
        id=conversation_id,
        title=prompt,
        created_at=stamp,
        updated_at=stamp,
        messages=[UserText(text=prompt), ModelText(text="hi")],
    )


@pytest.mark.asyncio
async def test_round_trip_preserves_ordered_messages(tmp_path: Path):
    store = _store(tmp_path)
    conversation = Conversation.new("Summarize the quarterly report", model="gemini-2.5-flash")
    messages = [
        UserText(text="Summarize the quarterly report"),
        ToolCallRequest(call_id="a", tool_name="read_file", arguments={"filepath": "report.txt"}),
        ToolCallResult(call_id="a", tool_name="read_file", content="Revenue up"),
        UserMedia(parts=[MediaPart(mime_type="image/png", data="aGk=", filename="chart.png")], caption="chart"),
        ModelText(text="Revenue went up."),
    ]

    await store.append(conversation, messages)
    loaded = await store.load(conversation.id)

    assert loaded is not None
    assert loaded.messages == messages
    assert loaded.model == "gemini-2.5-flash"
    assert store.markdown_path_for(conversation.id).exists()


@pytest.mark.asyncio
async def test_persisted_document_carries_kind_tags(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    conversation = _conversation("tags-0001")

    await store.save(conversation)

    data = json.loads(store.path_for("tags-0001").read_text(encoding="utf-8"))
    assert data["id"] == "tags-0001"
    assert [m["kind"] for m in data["messages"]] == ["user_text", "model_text"]
    assert all("timestamp" in m for m in data["messages"])
    assert not store.markdown_path_for("tags-0001").exists()


@pytest.mark.asyncio
async def test_index_zero_is_most_recent(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    await store.save(_conversation("older-aaaa", age_minutes=30))
    await store.save(_conversation("newer-bbbb", age_minutes=1))

    assert (await store.load("0")).id == "newer-bbbb"
    assert (await store.load("1")).id == "older-aaaa"
    assert (await store.load("")).id == "newer-bbbb"
    assert await store.load("5") is None


@pytest.mark.asyncio
async def test_load_by_prefix_and_hash(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    await store.save(_conversation("fix-login-bug-a1b2"))
    await store.save(_conversation("deploy-staging-c3d4"))

    assert (await store.load("fix-login")).id == "fix-login-bug-a1b2"
    assert (await store.load("c3d4")).id == "deploy-staging-c3d4"
    assert (await store.load("c3")).id == "deploy-staging-c3d4"
    assert await store.load("nothing-like-this") is None


@pytest.mark.asyncio
async def test_ambiguous_hash_prefix_raises(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    await store.save(_conversation("alpha-ab12"))
    await store.save(_conversation("beta-ab34"))

    with pytest.raises(AmbiguousIdentifierError) as excinfo:
        await store.load("ab")

    assert sorted(excinfo.value.matches) == ["alpha-ab12", "beta-ab34"]


@pytest.mark.asyncio
async def test_resolve_missing_conversation_raises(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)

    with pytest.raises(ConversationNotFoundError):
        await store.resolve("missing-0000")


@pytest.mark.asyncio
async def test_append_rejects_dangling_tool_result(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    conversation = _conversation("integrity-1111")
    await store.save(conversation)
    before = store.path_for(conversation.id).read_text(encoding="utf-8")

    with pytest.raises(StoreError):
        await store.append(conversation, [ToolCallResult(call_id="ghost", content="?")])

    assert store.path_for(conversation.id).read_text(encoding="utf-8") == before
    assert len(conversation.messages) == 2


@pytest.mark.asyncio
async def test_failed_write_leaves_previous_file_and_no_temp_files(monkeypatch, tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    conversation = _conversation("atomic-2222")
    await store.save(conversation)
    before = store.path_for(conversation.id).read_text(encoding="utf-8")

    def _broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(store_module.os, "replace", _broken_replace)

    with pytest.raises(StoreError):
        await store.append(conversation, [UserText(text="more")])

    assert store.path_for(conversation.id).read_text(encoding="utf-8") == before
    assert [p.name for p in store.root.iterdir()] == ["atomic-2222.json"]
    assert len(conversation.messages) == 2


@pytest.mark.asyncio
async def test_transient_write_failure_is_retried_once(monkeypatch, tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    real_replace = os.replace
    calls = {"count": 0}

    def _flaky_replace(src, dst):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OSError("busy")
        return real_replace(src, dst)

    monkeypatch.setattr(store_module.os, "replace", _flaky_replace)

    await store.save(_conversation("retry-3333"))

    assert calls["count"] == 2
    assert store.path_for("retry-3333").exists()


@pytest.mark.asyncio
async def test_list_returns_summaries_newest_first_and_skips_corrupt_files(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    long_prompt = "Please explain in detail how the credential rotation works across keys"
    await store.save(_conversation("rotation-aaaa", prompt=long_prompt, age_minutes=180))
    await store.save(Conversation(id="empty-bbbb"))
    (store.root / "broken-cccc.json").write_text("{not json", encoding="utf-8")

    summaries = await store.list()

    assert [s.id for s in summaries] == ["empty-bbbb", "rotation-aaaa"]
    assert summaries[0].preview == "(no messages)"
    assert summaries[1].preview.endswith("…")
    assert len(summaries[1].preview) == 50
    assert summaries[1].age == "3h"
    assert summaries[1].message_count == 2
    assert len(await store.list(limit=1)) == 1


@pytest.mark.asyncio
async def test_non_ascii_digits_are_not_treated_as_an_index(tmp_path: Path):
    store = _store(tmp_path, save_markdown=False)
    await store.save(_conversation("only-abcd"))

    assert await store.load("²") is None
    with pytest.raises(ConversationNotFoundError):
        await store.resolve("٣")
