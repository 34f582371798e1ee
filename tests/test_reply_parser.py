import pytest

from voice_avatar.services.reply_parser import (
    FallbackReply,
    ParsedReply,
    parse_reply,
    reply_from_raw,
)


def test_direct_json():
    reply = parse_reply('{"say": "Short version: yes. [pause-300] Really.", "show": "Yes."}')

    assert reply == ParsedReply(say="Short version: yes. [pause-300] Really.", show="Yes.")


def test_show_loses_pause_tags():
    reply = parse_reply('{"say": "Hi.", "show": "Hi. [pause-300] There."}')

    assert reply.show == "Hi. There."


def test_fenced_block():
    text = 'Here you go:\n```json\n{"say": "Quick take: fine.", "show": "Fine."}\n```'

    assert parse_reply(text) == ParsedReply(say="Quick take: fine.", show="Fine.")


def test_balanced_scan_prefers_last_object():
    text = (
        'draft {"say": "old", "show": "old"} and final '
        '{"say": "It has a } brace", "show": "new"} done'
    )

    assert parse_reply(text) == ParsedReply(say="It has a } brace", show="new")


@pytest.mark.parametrize(
    "text",
    [
        "**Bold** claim with a [link](https://example.com) [pause-300] here.",
        '{"say": "missing show"}',
        "",
    ],
)
def test_fallback_never_raises(text):
    reply = parse_reply(text)

    assert isinstance(reply, FallbackReply)
    assert "[pause-" not in reply.say
    assert "[pause-" not in reply.show
    assert "*" not in reply.say


def test_fallback_strips_markdown_for_speech():
    reply = parse_reply("- **Bold** claim with a [link](https://example.com)")

    assert reply.say == "Bold claim with a link"


def test_reply_from_raw_payloads():
    assert reply_from_raw({"say": "a", "show": "b"}) == ParsedReply(say="a", show="b")
    assert reply_from_raw({"show": '{"say": "c", "show": "d"}'}) == ParsedReply(say="c", show="d")
    assert reply_from_raw("plain words").say == "plain words"
    assert reply_from_raw(None).show == ""
