"""Tests for markdown to speech-text conversion."""

from concierge.interface.avatar.speech_text import markdown_to_speech_text


def test_plain_text_unchanged():
    assert markdown_to_speech_text("Parks open 8am–dusk.") == "Parks open 8am–dusk."


def test_links_spoken_with_url():
    text = "See [the parks site](https://parks.example.com) for details."
    assert markdown_to_speech_text(text) == (
        "See the parks site at https://parks.example.com for details."
    )


def test_link_title_dropped():
    text = '[Map](https://maps.example.com "City map")'
    assert markdown_to_speech_text(text) == "Map at https://maps.example.com"


def test_headings_lists_and_emphasis():
    text = "# Hours\n\n- **Mon–Fri**: 8am\n- *Sat*: 9am\n1. Bring _water_"
    assert markdown_to_speech_text(text) == "Hours\n\nMon–Fri: 8am\nSat: 9am\nBring water"


def test_code_and_quotes():
    text = "> Note\nRun `make`\n```\nmake all\n```"
    assert markdown_to_speech_text(text) == "Note\nRun make\nmake all"


def test_identifiers_keep_underscores():
    assert markdown_to_speech_text("Use snake_case_name here") == "Use snake_case_name here"


def test_tables_read_as_phrases():
    text = "| Day | Hours |\n|---|---|\n| Mon | 8am |"
    spoken = markdown_to_speech_text(text)
    assert "|" not in spoken
    assert "Day, Hours" in spoken
    assert "Mon, 8am" in spoken


def test_images_and_html():
    text = "![Park gate](gate.png) open <b>today</b><br/>"
    assert markdown_to_speech_text(text) == "Park gate open today"


def test_strikethrough_and_rule():
    assert markdown_to_speech_text("~~closed~~ open\n\n---\n\nBye") == "closed open\n\nBye"


def test_empty():
    assert markdown_to_speech_text("   ") == ""
