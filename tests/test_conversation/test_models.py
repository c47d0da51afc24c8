from datetime import timedelta

from switchboard.conversation.export import render_markdown, truncate_history_text
from switchboard.conversation.models import (
    Conversation,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserText,
    format_age,
    generate_conversation_id,
    generate_slug,
    id_hash,
)


def test_slug_drops_stopwords_and_punctuation():
    assert generate_slug("How do I fix the login bug?") == "fix-login-bug"
    assert generate_slug("Deploy v2.1 to Staging, please!") == "deploy-v21-to-staging-please"


def test_slug_caps_words_and_length():
    slug = generate_slug("alpha bravo charlie delta echo foxtrot golf")
    assert slug == "alpha-bravo-charlie-delta-echo"

    long_slug = generate_slug("supercalifragilistic expialidocious antidisestablishment")
    assert len(long_slug) <= 40
    assert not long_slug.endswith("-")


def test_slug_falls_back_when_nothing_significant():
    assert generate_slug("") == "conversation"
    assert generate_slug("what is it?") == "conversation"
    assert generate_slug("!!! ???") == "conversation"


def test_conversation_id_has_four_hex_hash():
    conversation_id = generate_conversation_id("Refactor the parser")

    assert conversation_id.startswith("refactor-parser-")
    suffix = id_hash(conversation_id)
    assert len(suffix) == 4
    int(suffix, 16)


def test_new_conversation_title_is_prompt_preview():
    conversation = Conversation.new("Line one\nline two", model="ollama::llama3.2")

    assert conversation.title == "Line one line two"
    assert conversation.model == "ollama::llama3.2"
    assert conversation.hash == id_hash(conversation.id)


def test_format_age_labels():
    assert format_age(timedelta(days=3, hours=2)) == "3d"
    assert format_age(timedelta(hours=5, minutes=59)) == "5h"
    assert format_age(timedelta(minutes=42)) == "42m"
    assert format_age(timedelta(seconds=5)) == "1m"
    assert format_age(timedelta(seconds=-30)) == "1m"


def test_markdown_rendering_includes_every_message():
    conversation = Conversation(
        id="render-abcd",
        title="Render",
        model="gemini-2.5-flash",
        messages=[
            UserText(text="read it"),
            ToolCallRequest(call_id="a", tool_name="read_file", arguments={"filepath": "x.txt"}),
            ToolCallResult(call_id="a", tool_name="read_file", content="contents", is_error=False),
            ModelText(text="It says contents."),
        ],
    )

    markdown = render_markdown(conversation)

    assert markdown.startswith("### Conversation render-abcd")
    assert "**Messages:** 4" in markdown
    assert "read it" in markdown
    assert "read_file" in markdown
    assert "It says contents." in markdown


def test_truncate_history_text():
    assert truncate_history_text("short") == "short"
    assert truncate_history_text("x" * 50, max_chars=10) == "x" * 10 + "... [truncated]"
