"""
Per-chat session storage for the Telegram bot.

In-memory, keyed by chat id, one session per chat. The store is injected
into the registration flow so tests (or a later Redis/Supabase backend)
can swap it.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from storefront_bot.agents.schemas import RegistrationDraft, Step


@dataclass
class ChatSession:
    chat_id: int
    step: Step = Step.IDLE
    draft: Optional[RegistrationDraft] = None
    bot_message_ids: list[int] = field(default_factory=list)
    user_message_ids: list[int] = field(default_factory=list)

    def track_bot_message(self, message_id: Optional[int]) -> None:
        if message_id is not None and message_id not in self.bot_message_ids:
            self.bot_message_ids.append(message_id)

    def track_user_message(self, message_id: Optional[int]) -> None:
        if message_id is not None and message_id not in self.user_message_ids:
            self.user_message_ids.append(message_id)

    def take_tracked_messages(self) -> list[int]:
        """Return every tracked id and forget them."""
        ids = [*self.bot_message_ids, *self.user_message_ids]
        self.bot_message_ids = []
        self.user_message_ids = []
        return ids

    def start_draft(self) -> RegistrationDraft:
        self.draft = RegistrationDraft()
        self.step = Step.COLLECTING_PHOTOS
        return self.draft

    def reset(self) -> None:
        self.step = Step.IDLE
        self.draft = None


class SessionStore:
    """Keyed session store; get() creates an idle session on first use."""

    def __init__(self):
        self._sessions: Dict[int, ChatSession] = {}

    def get(self, chat_id: int) -> ChatSession:
        session = self._sessions.get(chat_id)
        if session is None:
            session = ChatSession(chat_id=chat_id)
            self._sessions[chat_id] = session
        return session

    def drop(self, chat_id: int) -> None:
        self._sessions.pop(chat_id, None)

    def __contains__(self, chat_id: int) -> bool:
        return chat_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        _store = SessionStore()
    return _store
