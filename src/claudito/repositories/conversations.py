"""Conversation history persisted per project.

Each conversation is one JSON file under
``<data_dir>/conversations/<project_id>/<conversation_id>.json`` holding the
agent messages exchanged in it and the CLI session id used to resume it.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from ..errors import NotFoundError
from ..models import AgentMessage, Conversation, MessageType, utc_now
from .storage import read_json, write_json

logger = logging.getLogger(__name__)


class ConversationRepository:
    """Manages conversation files for all projects.

    Example:
        repo = ConversationRepository(data_dir, max_history=500)
        conversation = repo.create(project_id, label="Fix login bug")
        repo.add_message(project_id, conversation.id, message)
    """

    def __init__(self, data_dir: Path, max_history: int = 1000):
        """Initialize the repository.

        Args:
            data_dir: Application data directory
            max_history: Maximum messages kept per conversation (oldest are dropped)
        """
        self.root = data_dir / "conversations"
        self._max_history = max_history

    def _project_dir(self, project_id: str) -> Path:
        return self.root / project_id

    def _file(self, project_id: str, conversation_id: str) -> Path:
        return self._project_dir(project_id) / f"{conversation_id}.json"

    def _save(self, conversation: Conversation) -> None:
        write_json(self._file(conversation.project_id, conversation.id), conversation.to_api())

    def create(self, project_id: str, label: Optional[str] = None) -> Conversation:
        conversation = Conversation(
            id=uuid.uuid4().hex[:12],
            project_id=project_id,
            label=label or f"Conversation {utc_now():%Y-%m-%d %H:%M}",
        )
        self._save(conversation)
        return conversation

    def get(self, project_id: str, conversation_id: str) -> Optional[Conversation]:
        data = read_json(self._file(project_id, conversation_id))
        if data is None:
            return None
        return Conversation.model_validate(data)

    def require(self, project_id: str, conversation_id: str) -> Conversation:
        conversation = self.get(project_id, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation")
        return conversation

    def list(self, project_id: str) -> List[Conversation]:
        """Return the project's conversations, newest first, without messages."""
        directory = self._project_dir(project_id)
        if not directory.is_dir():
            return []

        conversations = []
        for path in directory.glob("*.json"):
            conversation = Conversation.model_validate(read_json(path))
            conversations.append(conversation.model_copy(update={"messages": []}))

        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    def add_message(self, project_id: str, conversation_id: str, message: AgentMessage) -> Conversation:
        conversation = self.require(project_id, conversation_id)
        messages = conversation.messages + [message]
        if len(messages) > self._max_history:
            messages = messages[-self._max_history:]

        conversation = conversation.model_copy(update={"messages": messages, "updated_at": utc_now()})
        self._save(conversation)
        return conversation

    def add_user_message(self, project_id: str, conversation_id: str, content: str) -> Conversation:
        """Convenience method to record what the user sent."""
        return self.add_message(project_id, conversation_id, AgentMessage(type=MessageType.USER, content=content))

    def get_recent(self, project_id: str, conversation_id: str, count: int) -> List[AgentMessage]:
        conversation = self.require(project_id, conversation_id)
        return conversation.messages[-count:] if count > 0 else []

    def rename(self, project_id: str, conversation_id: str, label: str) -> Conversation:
        conversation = self.require(project_id, conversation_id)
        conversation = conversation.model_copy(update={"label": label, "updated_at": utc_now()})
        self._save(conversation)
        return conversation

    def set_session_id(self, project_id: str, conversation_id: str, session_id: str) -> None:
        conversation = self.get(project_id, conversation_id)
        if conversation is None or conversation.session_id == session_id:
            return
        self._save(conversation.model_copy(update={"session_id": session_id}))

    def delete(self, project_id: str, conversation_id: str) -> bool:
        path = self._file(project_id, conversation_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def delete_project(self, project_id: str) -> None:
        directory = self._project_dir(project_id)
        if directory.is_dir():
            shutil.rmtree(directory)
            logger.info("Removed conversations of project %s", project_id)
