import json

import pytest

from universum.events import EventBus
from universum.export import export_all, export_conversation, sanitize_filename
from universum.locales import Translator
from universum.mutator import make_message, new_conversation
from universum.schemas import InlineData, UserRecord
from universum.workspace import Workspace


def _conversation():
    return new_conversation("Trip: Rome/Paris?").model_copy(
        update={
            "messages": [
                make_message("user", "Plan it", images=[InlineData(mime_type="image/png", data="x")]),
                make_message("model", "Day 1: Colosseum", is_typing=True),
                make_message("model", ""),
                make_message("system", "Generation stopped by user."),
            ]
        }
    )


def test_sanitize_filename():
    assert sanitize_filename("Trip: Rome/Paris?") == "Trip__Rome_Paris_"
    assert len(sanitize_filename("a" * 80)) == 50


def test_markdown_export():
    content, media_type, filename = export_conversation(_conversation(), "md")

    assert media_type == "text/markdown"
    assert filename == "Trip__Rome_Paris_.md"
    assert content.startswith("# Trip: Rome/Paris?\n\n**User:**\n\n*1 Image(s) attached by User*\n\nPlan it\n\n---\n\n")
    assert "**Universum:**\n\nDay 1: Colosseum" in content
    assert "**System:**" in content
    assert content.count("---") == 3


def test_text_export():
    content, media_type, _ = export_conversation(_conversation(), "txt")

    assert media_type == "text/plain"
    assert content.startswith("Conversation: Trip: Rome/Paris?\n=============================\n\nUser:\n[1 Image(s) attached by User]\nPlan it\n")


def test_json_export_drops_transient_fields():
    content, _, _ = export_conversation(_conversation(), "json")

    data = json.loads(content)
    assert data["title"] == "Trip: Rome/Paris?"
    assert "is_typing" not in data["messages"][1]


def test_unknown_format_is_rejected():
    with pytest.raises(ValueError):
        export_conversation(_conversation(), "pdf")


def test_export_all_names_file_after_user():
    workspace = Workspace(EventBus(), Translator("en"))
    workspace.store.insert(_conversation())
    workspace.add_memory_facts(["Likes tea"])

    data, filename = export_all(workspace)
    assert filename.startswith("universum_export_guest_")
    assert data["memory_facts"][0]["content"] == "Likes tea"
    assert len(data["conversations"]) == 1

    workspace.user = UserRecord(name="Ada", email="ada@example.com")
    _, filename = export_all(workspace)
    assert filename.startswith("universum_export_Ada_")
