import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from .persistence import serialize_conversation
from .schemas import Conversation, Message
from .workspace import Workspace

EXPORT_FORMATS = {
    "md": "text/markdown",
    "json": "application/json",
    "txt": "text/plain",
}
RULE = "-----------------------------"


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-z0-9_.-]", "_", name, flags=re.IGNORECASE)[:50]


def _speaker(message: Message) -> str:
    if message.role == "user":
        return "User"
    if message.role == "model":
        return "Universum"
    if message.role == "coach":
        return "Coach"
    return "System"


def _markdown(conversation: Conversation) -> str:
    lines = [f"# {conversation.title}\n\n"]
    for message in conversation.messages:
        content = message.active_content
        if not content and not message.images and message.audio is None:
            continue
        speaker = _speaker(message)
        lines.append(f"**{speaker}:**\n\n")
        if message.images:
            lines.append(f"*{len(message.images)} Image(s) attached by {speaker}*\n\n")
        if message.audio is not None:
            lines.append(f"*Audio attachment: {message.audio.name or message.audio.mime_type}*\n\n")
        if content:
            lines.append(f"{content}\n\n")
        lines.append("---\n\n")
    return "".join(lines)


def _plain_text(conversation: Conversation) -> str:
    lines = [f"Conversation: {conversation.title}\n=============================\n\n"]
    for message in conversation.messages:
        content = message.active_content
        if not content and not message.images and message.audio is None:
            continue
        speaker = _speaker(message)
        lines.append(f"{speaker}:\n")
        if message.images:
            lines.append(f"[{len(message.images)} Image(s) attached by {speaker}]\n")
        if message.audio is not None:
            lines.append(f"[Audio attachment: {message.audio.name or message.audio.mime_type}]\n")
        if content:
            lines.append(f"{content}\n")
        lines.append(f"\n{RULE}\n\n")
    return "".join(lines)


def export_conversation(conversation: Conversation, fmt: str) -> Tuple[str, str, str]:
    """Render a conversation; returns (content, media type, filename)."""
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    if fmt == "md":
        content = _markdown(conversation)
    elif fmt == "json":
        content = json.dumps(serialize_conversation(conversation), indent=2, ensure_ascii=False)
    else:
        content = _plain_text(conversation)
    return content, EXPORT_FORMATS[fmt], f"{sanitize_filename(conversation.title)}.{fmt}"


def export_all(workspace: Workspace) -> Tuple[Dict[str, Any], str]:
    user = workspace.user
    data = {
        "user": user.model_dump() if user else None,
        "conversations": [serialize_conversation(c) for c in workspace.store.list()],
        "memory_facts": [fact.model_dump() for fact in workspace.memory_facts],
        "coach_goals": [goal.model_dump() for goal in workspace.coach_goals],
        "recent_attachments": [item.model_dump(exclude_none=True) for item in workspace.recent_attachments],
        "cloud_connections": {k: v.model_dump() for k, v in workspace.cloud_connections.items()},
    }
    date = datetime.now(timezone.utc).date().isoformat()
    filename = f"universum_export_{user.name if user else 'guest'}_{date}.json"
    return data, filename
