"""
FAA Certification RAG - Conversation Store
Multi-turn conversation history in blob storage, one JSON blob per session,
with a 7-day TTL enforced lazily on read.
"""

import time
import uuid
from typing import Callable, Optional

from loguru import logger

from certrag.core.schemas import ConversationTurn, StoredConversation, TurnRole
from certrag.rag.blob_store import BlobStore


class ConversationStore:
    """
    Session-keyed conversation persistence.

    Writes rewrite the whole turn list, so concurrent requests on the same
    session are last-writer-wins. Storage failures are logged; a failed read
    behaves like a new session.
    """

    def __init__(
        self,
        store: BlobStore,
        container: str = "conversations",
        ttl_days: float = 7,
        max_turns: int = 20,
        max_assistant_chars: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.container = container
        self.ttl_days = ttl_days
        self.max_turns = max_turns
        self.max_assistant_chars = max_assistant_chars
        self._clock = clock

        if not getattr(store, "durable", False):
            logger.warning("ConversationStore: no Azure Storage configured, using in-memory fallback")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _blob_name(session_id: str) -> str:
        return f"{session_id}.json"

    @staticmethod
    def generate_session_id() -> str:
        return str(uuid.uuid4())

    def new_conversation(self, session_id: str) -> StoredConversation:
        now = self._now_ms()
        return StoredConversation(session_id=session_id, created_at=now, updated_at=now, turns=[])

    async def get(self, session_id: str) -> Optional[StoredConversation]:
        """Stored conversation, or None when missing, expired or unreadable."""
        name = self._blob_name(session_id)
        try:
            record = await self.store.read(self.container, name)
            if record is None:
                return None

            conversation = StoredConversation.model_validate_json(record.data)
            updated_at = int(record.metadata.get("updatedat", conversation.updated_at))

            if self._now_ms() - updated_at > self.ttl_days * 24 * 3600 * 1000:
                logger.info(f"Conversation expired: {session_id}")
                await self.store.delete(self.container, name)
                return None

            logger.info(f"Conversation loaded: {session_id} ({len(conversation.turns)} turns)")
            return conversation
        except Exception as e:
            logger.error(f"Error loading conversation {session_id}: {e}")
            return None

    async def save(self, conversation: StoredConversation) -> None:
        """Persist, keeping only the most recent max_turns turns."""
        if len(conversation.turns) > self.max_turns:
            conversation.turns = conversation.turns[-self.max_turns:]
        conversation.updated_at = self._now_ms()

        try:
            await self.store.write(
                self.container,
                self._blob_name(conversation.session_id),
                conversation.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8"),
                metadata={
                    "createdat": str(conversation.created_at),
                    "updatedat": str(conversation.updated_at),
                    "turns": str(len(conversation.turns)),
                },
            )
            logger.info(f"Conversation saved: {conversation.session_id} ({len(conversation.turns)} turns)")
        except Exception as e:
            logger.error(f"Error saving conversation: {e}")

    async def add_turn(self, session_id: str, turn: ConversationTurn) -> StoredConversation:
        conversation = await self.get(session_id) or self.new_conversation(session_id)
        conversation.turns.append(turn)
        await self.save(conversation)
        return conversation

    async def delete(self, session_id: str) -> None:
        try:
            await self.store.delete(self.container, self._blob_name(session_id))
            logger.info(f"Conversation deleted: {session_id}")
        except Exception as e:
            logger.error(f"Error deleting conversation {session_id}: {e}")

    def format_for_context(self, conversation: Optional[StoredConversation], max_turns: int = 10) -> str:
        """Render the last max_turns turns as a markdown block for the prompt."""
        if conversation is None or not conversation.turns:
            return ""

        text = "# Previous Conversation\n\n"
        for turn in conversation.turns[-max_turns:]:
            if turn.role == TurnRole.USER:
                text += f"**User:** {turn.content}\n\n"
            else:
                content = turn.content
                if len(content) > self.max_assistant_chars:
                    content = content[:self.max_assistant_chars] + "..."
                text += f"**Assistant:** {content}\n\n"
        return text
