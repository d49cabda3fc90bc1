"""Pure conversation transforms.

Every function returns a new, re-validated object and leaves its input untouched,
so the store can swap whole records in one step.
"""

import random
import string
import time
from typing import Callable, List, Optional, TypeVar

from pydantic import BaseModel

from .schemas import Conversation, ForkInfo, Message

ModelT = TypeVar("ModelT", bound=BaseModel)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{now_ms()}-{suffix}"


def evolve(model: ModelT, **changes) -> ModelT:
    # model_copy skips validators; rebuild so version invariants are re-checked.
    data = {name: getattr(model, name) for name in type(model).model_fields}
    data.update(changes)
    return type(model).model_validate(data)


def new_conversation(title: str, model: str = "universum-4.0") -> Conversation:
    return Conversation(id=new_id("conv"), title=title, model=model, created_at=now_ms())


def make_message(role: str, text: Optional[str] = "", **extra) -> Message:
    history = [text] if text is not None else []
    return Message(id=extra.pop("id", None) or new_id(role), role=role, content_history=history, **extra)


def append_message(conversation: Conversation, message: Message) -> Conversation:
    return evolve(conversation, messages=[*conversation.messages, message])


def replace_messages(conversation: Conversation, messages: List[Message]) -> Conversation:
    return evolve(conversation, messages=list(messages))


def message_index(conversation: Conversation, message_id: str) -> int:
    for index, message in enumerate(conversation.messages):
        if message.id == message_id:
            return index
    return -1


def update_message(
    conversation: Conversation,
    message_id: str,
    updater: Callable[[Message], Message],
) -> Conversation:
    messages = [updater(m) if m.id == message_id else m for m in conversation.messages]
    return evolve(conversation, messages=messages)


def set_sole_content(message: Message, text: str) -> Message:
    return evolve(message, content_history=[text], active_version_index=0)


def append_to_active(message: Message, text: str, separator: str = "\n\n") -> Message:
    """Append text to the active version, keeping every other version intact."""
    if not message.content_history:
        return evolve(message, content_history=[text], active_version_index=0)
    history = list(message.content_history)
    current = history[message.active_version_index]
    history[message.active_version_index] = f"{current}{separator}{text}" if current.strip() else text
    return evolve(message, content_history=history)


def add_version(message: Message, text: str) -> Message:
    history = [*message.content_history[: message.active_version_index + 1], text]
    return evolve(message, content_history=history, active_version_index=len(history) - 1)


def select_version(message: Message, index: int) -> Message:
    if index < 0 or index >= len(message.content_history):
        raise IndexError(f"version {index} out of range for message {message.id}")
    return evolve(message, active_version_index=index)


def clear_in_flight(message: Message, **changes) -> Message:
    cleared = {"is_typing": False, "analysis_state": None, "pending_artifact": None, "artifact_progress": None}
    cleared.update(changes)
    return evolve(message, **cleared)


def history_through(conversation: Conversation, message_id: str) -> List[Message]:
    index = message_index(conversation, message_id)
    if index < 0:
        raise KeyError(message_id)
    return list(conversation.messages[: index + 1])


def history_through_last_user(conversation: Conversation) -> List[Message]:
    for index in range(len(conversation.messages) - 1, -1, -1):
        if conversation.messages[index].role == "user":
            return list(conversation.messages[: index + 1])
    return []


def fork_conversation(conversation: Conversation, message_id: str, title: str) -> Conversation:
    history = history_through(conversation, message_id)
    copied = [clear_in_flight(m, id=new_id(m.role)) for m in history]
    return Conversation(
        id=new_id("conv"),
        title=title,
        model=conversation.model,
        created_at=now_ms(),
        messages=copied,
        fork_info=ForkInfo(parent_conversation_id=conversation.id, parent_message_id=message_id),
    )


def sort_conversations(conversations: List[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: (not c.is_pinned, -c.created_at))
