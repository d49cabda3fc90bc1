import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import aiosqlite

from .config import CAPABLE_LABEL, FAST_LABEL
from .events import EventBus
from .locales import Translator
from .schemas import CloudConnection, CoachGoal, Conversation, MemoryFact, RecentAttachment, UserRecord
from .workspace import Workspace, WorkspaceBundle, dedupe_recents

logger = logging.getLogger("uvicorn.error")

GUEST_DATA_KEY = "universum-guest-data"
GUEST_CONNECTIONS_KEY = "universum-guest-cloud-connections"
USERS_DB_KEY = "universum-users-db"
SESSION_KEY = "universum-session"

TRANSIENT_MESSAGE_FIELDS = {
    "is_typing",
    "analysis_state",
    "pending_artifact",
    "artifact_progress",
    "artifact",
    "code_block",
    "requires_key_selection",
}

LEGACY_FAST_LABELS = (
    "fast",
    "universum-1.3-schnell",
    "universum-1.4-schnell",
    "universum-1.5-schnell",
    "universum-1.6-schnell",
    "universum-1.7-schnell",
)
LEGACY_CAPABLE_LABELS = (
    "smart",
    "genius",
    "genius-pro",
    "universum-pro",
    "universum-1.3",
    "universum-1.4",
    "universum-1.5",
    "universum-1.6",
    "universum-1.7",
)
LEGACY_MODEL_LABELS = {
    **{label: FAST_LABEL for label in LEGACY_FAST_LABELS},
    **{label: CAPABLE_LABEL for label in LEGACY_CAPABLE_LABELS},
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def data_key(email: Optional[str]) -> str:
    return f"universum-chat-data-{email}" if email else GUEST_DATA_KEY


def connections_key(email: Optional[str]) -> str:
    return f"universum-cloud-connections-{email}" if email else GUEST_CONNECTIONS_KEY


class KeyValueStorage:
    """String key-value storage backed by SQLite."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            await db.commit()

    async def get(self, key: str) -> Optional[str]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT value FROM kv WHERE key=?", (key,))
            row = await cursor.fetchone()
            await cursor.close()
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO kv(key, value, updated_at) VALUES (?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, value, utc_now()),
            )
            await db.commit()

    async def remove(self, key: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM kv WHERE key=?", (key,))
            await db.commit()

    async def keys(self, prefix: str = "") -> List[str]:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]


def serialize_conversation(conversation: Conversation) -> Dict[str, Any]:
    data = conversation.model_dump(mode="json", exclude={"messages"})
    data["messages"] = [m.model_dump(mode="json", exclude=TRANSIENT_MESSAGE_FIELDS) for m in conversation.messages]
    return data


def serialize_bundle(bundle: WorkspaceBundle) -> str:
    payload = {
        "conversations": [serialize_conversation(c) for c in bundle.conversations],
        "memory_facts": [f.model_dump(mode="json") for f in bundle.memory_facts],
        "coach_goals": [g.model_dump(mode="json") for g in bundle.coach_goals],
        "recent_attachments": [r.model_dump(mode="json") for r in bundle.recent_attachments],
    }
    return _json_dumps(payload)


def _migrate_label(label: Any) -> str:
    if label in (CAPABLE_LABEL, FAST_LABEL):
        return label
    return LEGACY_MODEL_LABELS.get(label, CAPABLE_LABEL)


def _created_at_from_id(conversation_id: str) -> int:
    parts = str(conversation_id).split("-")
    if len(parts) > 1 and parts[1].isdigit():
        return int(parts[1])
    return 0


def migrate_message(raw: Dict[str, Any]) -> Dict[str, Any]:
    message = {k: v for k, v in raw.items() if k not in TRANSIENT_MESSAGE_FIELDS}
    legacy = message.pop("content", None)
    history = message.get("content_history")
    if not isinstance(history, list):
        history = [legacy] if isinstance(legacy, str) else []
    message["content_history"] = [h if isinstance(h, str) else str(h) for h in history]
    index = message.get("active_version_index")
    length = len(message["content_history"])
    if not isinstance(index, int) or index < 0 or (length and index >= length) or (not length and index != 0):
        message["active_version_index"] = max(0, length - 1)
    return message


def migrate_conversation(raw: Dict[str, Any]) -> Conversation:
    """Bring a stored conversation record up to the current schema; raises on unusable records."""
    if not isinstance(raw, dict) or not raw.get("id"):
        raise ValueError("conversation record without id")
    data = dict(raw)
    data["messages"] = [migrate_message(m) for m in (raw.get("messages") or []) if isinstance(m, dict)]
    data["model"] = _migrate_label(raw.get("model"))
    if not data.get("created_at"):
        data["created_at"] = _created_at_from_id(data["id"])
    return Conversation.model_validate(data)


def _valid_items(model: Any, items: Any) -> List[Any]:
    valid: List[Any] = []
    for item in items if isinstance(items, list) else []:
        try:
            valid.append(model.model_validate(item))
        except Exception as exc:
            logger.warning("Dropping stored %s: %s", model.__name__, exc)
    return valid


def parse_bundle(payload: Dict[str, Any], bus: Optional[EventBus], t: Translator) -> WorkspaceBundle:
    conversations: List[Conversation] = []
    for index, raw in enumerate(payload.get("conversations") or []):
        try:
            conversations.append(migrate_conversation(raw))
        except Exception as exc:
            name = (raw or {}).get("title") if isinstance(raw, dict) else None
            logger.warning("Skipping stored conversation %s: %s", index, exc)
            if bus is not None:
                bus.toast(t("conversation_load_error", name or f"Chat #{index + 1}"), "error", t("toast_error_title"))
    return WorkspaceBundle(
        conversations=conversations,
        memory_facts=_valid_items(MemoryFact, payload.get("memory_facts")),
        coach_goals=_valid_items(CoachGoal, payload.get("coach_goals")),
        recent_attachments=_valid_items(RecentAttachment, payload.get("recent_attachments")),
    )


class WorkspacePersistence:
    """Loads and saves the active identity's workspace with debounced writes."""

    def __init__(
        self,
        storage: KeyValueStorage,
        workspace: Workspace,
        bus: EventBus,
        t: Translator,
        debounce_ms: int = 500,
    ):
        self.storage = storage
        self.workspace = workspace
        self.bus = bus
        self.t = t
        self.debounce_s = max(0, debounce_ms) / 1000.0
        self.dirty: Set[str] = set()
        self._pending: Optional[asyncio.Task] = None
        self.suspended = False
        workspace.change_hooks.append(self.schedule)

    def _email(self) -> Optional[str]:
        user = self.workspace.user
        return user.email if user else None

    def schedule(self, kind: str) -> None:
        if self.suspended:
            return
        self.dirty.add(kind)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next flush() writes the dirty state.
            return
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.debounce_s)
        await asyncio.shield(self._write())

    async def flush(self) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.cancel()
        await self._write()

    async def _write(self) -> None:
        dirty, self.dirty = self.dirty, set()
        email = self._email()
        if "data" in dirty:
            await self.storage.set(data_key(email), serialize_bundle(self.workspace.bundle()))
        if "connections" in dirty:
            connections = {k: v.model_dump(mode="json") for k, v in self.workspace.cloud_connections.items()}
            await self.storage.set(connections_key(email), _json_dumps(connections))

    async def read_bundle(self, email: Optional[str]) -> WorkspaceBundle:
        key = data_key(email)
        raw = await self.storage.get(key)
        if not raw:
            return WorkspaceBundle()
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("stored workspace is not an object")
        except ValueError as exc:
            backup_key = f"{key}-corrupted-backup-{utc_now()}"
            logger.warning("Stored workspace %s is corrupted, backed up to %s: %s", key, backup_key, exc)
            await self.storage.set(backup_key, raw)
            self.bus.toast(self.t("data_load_error"), "error", self.t("toast_error_title"))
            return WorkspaceBundle()
        return parse_bundle(payload, self.bus, self.t)

    async def read_connections(self, email: Optional[str]) -> Dict[str, CloudConnection]:
        raw = _json_loads(await self.storage.get(connections_key(email)), {})
        connections: Dict[str, CloudConnection] = {}
        if not isinstance(raw, dict):
            return connections
        for provider, value in raw.items():
            try:
                connections[provider] = CloudConnection.model_validate(value)
            except Exception as exc:
                logger.warning("Dropping stored cloud connection %s: %s", provider, exc)
        return connections

    async def load(self, user: Optional[UserRecord]) -> None:
        email = user.email if user else None
        bundle = await self.read_bundle(email)
        connections = await self.read_connections(email)
        self.suspended = True
        try:
            self.workspace.load(bundle, connections, user)
        finally:
            self.suspended = False
        self.workspace.ensure_conversation()

    async def merge_guest_into(self, email: str, recent_limit: int = 20) -> bool:
        """One-time move of guest data into a user's namespace."""
        guest_raw = await self.storage.get(GUEST_DATA_KEY)
        if not guest_raw:
            return False
        guest = _json_loads(guest_raw, None)
        if not isinstance(guest, dict):
            logger.warning("Guest data is unreadable; skipping merge for %s", email)
            return False
        user = _json_loads(await self.storage.get(data_key(email)), None)
        if not isinstance(user, dict):
            user = {"conversations": [], "memory_facts": [], "coach_goals": [], "recent_attachments": []}
        guest_bundle = parse_bundle(guest, None, self.t)
        user_bundle = parse_bundle(user, None, self.t)
        existing = {r.identity for r in user_bundle.recent_attachments}
        recents = [r for r in guest_bundle.recent_attachments if r.identity not in existing]
        merged = WorkspaceBundle(
            conversations=[*[c for c in guest_bundle.conversations if c.messages], *user_bundle.conversations],
            memory_facts=user_bundle.memory_facts,
            coach_goals=user_bundle.coach_goals,
            recent_attachments=dedupe_recents([*recents, *user_bundle.recent_attachments], recent_limit),
        )
        await self.storage.set(data_key(email), serialize_bundle(merged))
        await self.storage.remove(GUEST_DATA_KEY)
        await self.storage.remove(GUEST_CONNECTIONS_KEY)
        return True


async def read_users(storage: KeyValueStorage) -> Tuple[List[Dict[str, Any]], bool]:
    raw = await storage.get(USERS_DB_KEY)
    users = _json_loads(raw, [])
    if not isinstance(users, list):
        logger.warning("User database is corrupted; resetting it.")
        return [], False
    return [u for u in users if isinstance(u, dict)], True
