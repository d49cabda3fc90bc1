from typing import Callable, List, Optional, Tuple

from .mutator import append_message, sort_conversations, update_message
from .schemas import Conversation, Message

Listener = Callable[[str, Optional[str], Optional[Conversation]], None]


class ConversationStore:
    """Authoritative in-memory conversation collection.

    Records are never edited in place: each mutation applies a pure transform and swaps the
    whole conversation, then notifies listeners (SSE fan-out, debounced persistence).
    """

    def __init__(self, conversations: Optional[List[Conversation]] = None):
        self._conversations: Tuple[Conversation, ...] = tuple(conversations or ())
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: str, conversation_id: Optional[str], conversation: Optional[Conversation]) -> None:
        for listener in list(self._listeners):
            listener(event, conversation_id, conversation)

    def list(self) -> List[Conversation]:
        return list(self._conversations)

    def list_sorted(self) -> List[Conversation]:
        return sort_conversations(list(self._conversations))

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def insert(self, conversation: Conversation) -> Conversation:
        self._conversations = (conversation, *[c for c in self._conversations if c.id != conversation.id])
        self._notify("updated", conversation.id, conversation)
        return conversation

    def upsert(
        self,
        conversation_id: str,
        updater: Callable[[Conversation], Conversation],
    ) -> Optional[Conversation]:
        current = self.get(conversation_id)
        if current is None:
            return None
        updated = updater(current)
        self._conversations = tuple(updated if c.id == conversation_id else c for c in self._conversations)
        self._notify("updated", conversation_id, updated)
        return updated

    def append(self, conversation_id: str, message: Message) -> Optional[Conversation]:
        return self.upsert(conversation_id, lambda c: append_message(c, message))

    def update_message(
        self,
        conversation_id: str,
        message_id: str,
        updater: Callable[[Message], Message],
    ) -> Optional[Conversation]:
        return self.upsert(conversation_id, lambda c: update_message(c, message_id, updater))

    def remove(self, conversation_id: str) -> bool:
        if self.get(conversation_id) is None:
            return False
        self._conversations = tuple(c for c in self._conversations if c.id != conversation_id)
        self._notify("removed", conversation_id, None)
        return True

    def replace_all(self, conversations: List[Conversation], notify: bool = True) -> None:
        self._conversations = tuple(conversations)
        if notify:
            self._notify("reset", None, None)
