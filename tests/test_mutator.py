import pytest
from pydantic import ValidationError

from universum.mutator import (
    add_version,
    append_to_active,
    clear_in_flight,
    fork_conversation,
    history_through_last_user,
    make_message,
    new_conversation,
    select_version,
    sort_conversations,
)
from universum.schemas import ArtifactProgress, ImageArtifact, InlineData, Message
from universum.store import ConversationStore


def test_add_version_discards_versions_after_active():
    message = make_message("user", "one")
    message = add_version(message, "two")
    message = add_version(message, "three")
    message = select_version(message, 0)

    edited = add_version(message, "rewrite")

    assert edited.content_history == ["one", "rewrite"]
    assert edited.active_version_index == 1
    assert message.content_history == ["one", "two", "three"]


def test_select_version_out_of_range_raises():
    message = make_message("user", "only")
    with pytest.raises(IndexError):
        select_version(message, 3)


def test_active_index_is_clamped_on_validation():
    message = Message(id="m1", role="model", content_history=["a", "b"], active_version_index=9)
    assert message.active_version_index == 1
    assert message.active_content == "b"


def test_pending_artifact_and_artifact_are_exclusive():
    with pytest.raises(ValidationError):
        Message(
            id="m1",
            role="model",
            content_history=[""],
            pending_artifact="image",
            artifact=ImageArtifact(images=[InlineData(mime_type="image/png", data="x")]),
        )


def test_clear_in_flight_accepts_overrides():
    message = make_message("model", "", is_typing=True, analysis_state=[])
    progress = ArtifactProgress(kind="pdf", filename="a.pdf")

    cleared = clear_in_flight(message, pending_artifact="pdf", artifact_progress=progress)

    assert cleared.is_typing is False
    assert cleared.analysis_state is None
    assert cleared.pending_artifact == "pdf"
    assert cleared.artifact_progress.filename == "a.pdf"


def test_append_to_active_keeps_other_versions():
    message = add_version(make_message("model", "first"), "second")
    message = select_version(message, 0)

    updated = append_to_active(message, "error line")

    assert updated.content_history == ["first\n\nerror line", "second"]


def test_history_through_last_user_drops_trailing_replies():
    conversation = new_conversation("Chat")
    messages = [make_message("user", "q1"), make_message("model", "a1"), make_message("user", "q2"), make_message("model", "a2")]
    conversation = conversation.model_copy(update={"messages": messages})

    history = history_through_last_user(conversation)

    assert [m.active_content for m in history] == ["q1", "a1", "q2"]


def test_fork_copies_prefix_with_lineage():
    conversation = new_conversation("Trip")
    messages = [make_message("user", "plan"), make_message("model", "sure", is_typing=True), make_message("user", "more")]
    conversation = conversation.model_copy(update={"messages": messages})

    forked = fork_conversation(conversation, messages[1].id, "Trip (fork)")

    assert forked.id != conversation.id
    assert [m.active_content for m in forked.messages] == ["plan", "sure"]
    assert all(m.id not in {o.id for o in messages} for m in forked.messages)
    assert forked.messages[1].is_typing is False
    assert forked.fork_info.parent_conversation_id == conversation.id
    assert forked.fork_info.parent_message_id == messages[1].id


def test_sort_puts_pinned_first_then_newest():
    old = new_conversation("old").model_copy(update={"created_at": 1})
    new = new_conversation("new").model_copy(update={"created_at": 3})
    pinned = new_conversation("pinned").model_copy(update={"created_at": 2, "is_pinned": True})

    assert [c.title for c in sort_conversations([old, new, pinned])] == ["pinned", "new", "old"]


def test_store_swaps_whole_records_and_notifies():
    events = []
    conversation = new_conversation("Chat")
    store = ConversationStore([conversation])
    store.add_listener(lambda event, cid, _c: events.append((event, cid)))

    message = make_message("user", "hello")
    updated = store.append(conversation.id, message)

    assert updated is not conversation
    assert conversation.messages == []
    assert store.get(conversation.id).messages[0].active_content == "hello"
    assert events == [("updated", conversation.id)]

    assert store.upsert("missing", lambda c: c) is None
    assert store.remove(conversation.id) is True
    assert store.remove(conversation.id) is False
    assert events[-1] == ("removed", conversation.id)
