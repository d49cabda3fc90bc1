from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .events import EventBus
from .mutator import new_conversation, now_ms
from .locales import Translator
from .schemas import (
    CloudConnection,
    CoachGoal,
    Conversation,
    MemoryFact,
    RecentAttachment,
    UserRecord,
)
from .store import ConversationStore

ChangeHook = Callable[[str], None]


class WorkspaceBundle(BaseModel):
    conversations: List[Conversation] = Field(default_factory=list)
    memory_facts: List[MemoryFact] = Field(default_factory=list)
    coach_goals: List[CoachGoal] = Field(default_factory=list)
    recent_attachments: List[RecentAttachment] = Field(default_factory=list)


def dedupe_recents(items: Iterable[RecentAttachment], limit: int) -> List[RecentAttachment]:
    seen = set()
    merged: List[RecentAttachment] = []
    for item in items:
        if item.identity in seen:
            continue
        seen.add(item.identity)
        merged.append(item)
    return merged[:limit]


class Workspace:
    """Everything one identity owns: conversations plus the cross-conversation collections.

    Collections are tuples or fresh dicts replaced as a whole, never edited in place.
    """

    def __init__(self, bus: EventBus, t: Translator, recent_limit: int = 20):
        self.bus = bus
        self.t = t
        self.recent_limit = recent_limit
        self.store = ConversationStore()
        self.store.add_listener(self._on_store_change)
        self.memory_facts: Tuple[MemoryFact, ...] = ()
        self.coach_goals: Tuple[CoachGoal, ...] = ()
        self.recent_attachments: Tuple[RecentAttachment, ...] = ()
        self.cloud_connections: Dict[str, CloudConnection] = {}
        self.user: Optional[UserRecord] = None
        self.active_conversation_id: Optional[str] = None
        self.change_hooks: List[ChangeHook] = []

    def _changed(self, kind: str) -> None:
        for hook in list(self.change_hooks):
            hook(kind)

    def _on_store_change(self, event: str, conversation_id: Optional[str], conversation: Optional[Conversation]) -> None:
        if event == "updated" and conversation is not None:
            self.bus.publish(
                "conversation_updated",
                {"conversation_id": conversation_id, "conversation": conversation.model_dump(mode="json")},
            )
        elif event == "removed":
            if self.active_conversation_id == conversation_id:
                remaining = self.store.list_sorted()
                self.active_conversation_id = remaining[0].id if remaining else None
            self.bus.publish("conversation_removed", {"conversation_id": conversation_id})
        self._changed("data")

    # Conversations

    def new_conversation(self, model: Optional[str] = None) -> Conversation:
        conversation = new_conversation(self.t("new_chat_title"), model or "universum-4.0")
        self.store.insert(conversation)
        self.active_conversation_id = conversation.id
        return conversation

    def ensure_conversation(self) -> Conversation:
        conversations = self.store.list_sorted()
        if not conversations:
            return self.new_conversation()
        if self.active_conversation_id is None:
            self.active_conversation_id = conversations[0].id
        return self.store.get(self.active_conversation_id) or conversations[0]

    # Memory facts

    def add_memory_facts(self, contents: Iterable[str]) -> List[MemoryFact]:
        existing = {fact.content.strip().lower() for fact in self.memory_facts}
        stamp = now_ms()
        added: List[MemoryFact] = []
        for index, content in enumerate(contents):
            if not isinstance(content, str):
                continue
            cleaned = content.strip()
            if not cleaned or cleaned.lower() in existing:
                continue
            existing.add(cleaned.lower())
            added.append(MemoryFact(id=f"fact-{stamp}-{index}", content=cleaned, created_at=stamp))
        if added:
            self.memory_facts = (*self.memory_facts, *added)
            self.bus.publish("memory_updated", {"count": len(self.memory_facts)})
            self._changed("data")
        return added

    def remove_memory_fact(self, fact_id: str) -> bool:
        remaining = tuple(fact for fact in self.memory_facts if fact.id != fact_id)
        if len(remaining) == len(self.memory_facts):
            return False
        self.memory_facts = remaining
        self.bus.publish("memory_updated", {"count": len(self.memory_facts)})
        self._changed("data")
        return True

    def clear_memory(self) -> None:
        self.memory_facts = ()
        self.bus.publish("memory_updated", {"count": 0})
        self._changed("data")

    # Coach goals

    def add_coach_goal(self, content: str) -> CoachGoal:
        stamp = now_ms()
        goal = CoachGoal(id=f"goal-{stamp}-{len(self.coach_goals)}", content=content.strip(), created_at=stamp)
        self.coach_goals = (*self.coach_goals, goal)
        self._changed("data")
        return goal

    def remove_coach_goal(self, goal_id: str) -> bool:
        remaining = tuple(goal for goal in self.coach_goals if goal.id != goal_id)
        if len(remaining) == len(self.coach_goals):
            return False
        self.coach_goals = remaining
        self._changed("data")
        return True

    # Recent attachments

    def remember_attachments(self, items: List[RecentAttachment]) -> None:
        if not items:
            return
        self.recent_attachments = tuple(dedupe_recents([*items, *self.recent_attachments], self.recent_limit))
        self._changed("data")

    # Cloud connections

    def connect_cloud(self, provider: str, account: str) -> CloudConnection:
        connection = CloudConnection(provider=provider, account=account, connected_at=now_ms())
        self.cloud_connections = {**self.cloud_connections, provider: connection}
        self.bus.publish("cloud_connections_updated", {"providers": sorted(self.cloud_connections)})
        self._changed("connections")
        return connection

    def disconnect_cloud(self, provider: str) -> bool:
        if provider not in self.cloud_connections:
            return False
        self.cloud_connections = {k: v for k, v in self.cloud_connections.items() if k != provider}
        self.bus.publish("cloud_connections_updated", {"providers": sorted(self.cloud_connections)})
        self._changed("connections")
        return True

    # Whole-workspace snapshots

    def bundle(self) -> WorkspaceBundle:
        return WorkspaceBundle(
            conversations=self.store.list(),
            memory_facts=list(self.memory_facts),
            coach_goals=list(self.coach_goals),
            recent_attachments=list(self.recent_attachments),
        )

    def load(
        self,
        bundle: WorkspaceBundle,
        connections: Dict[str, CloudConnection],
        user: Optional[UserRecord],
    ) -> None:
        self.user = user
        self.store.replace_all(bundle.conversations, notify=False)
        self.memory_facts = tuple(bundle.memory_facts)
        self.coach_goals = tuple(bundle.coach_goals)
        self.recent_attachments = tuple(bundle.recent_attachments)
        self.cloud_connections = dict(connections)
        sorted_conversations = self.store.list_sorted()
        self.active_conversation_id = sorted_conversations[0].id if sorted_conversations else None
        self.bus.publish(
            "workspace_loaded",
            {"user": user.model_dump() if user else None, "conversations": len(bundle.conversations)},
        )
