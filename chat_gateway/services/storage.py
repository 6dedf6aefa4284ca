import datetime as _dt
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

import anyio
from pydantic import ValidationError

from chat_gateway.models.domain import Conversation, ConversationSummary, Message

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_TITLE = "New conversation"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.:@-]+$")


class InvalidIdentifier(ValueError):
    """A user or session id that cannot be used as a file name."""


def check_identifier(kind: str, value: str) -> str:
    if not value or value in (".", "..") or not _SAFE_ID.match(value):
        raise InvalidIdentifier(f"Invalid {kind}: {value!r}")
    return value


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class ConversationStore:
    """One JSON file per conversation under a directory per user.

    There is no locking: a session must be driven by one writer at a time.
    """

    def __init__(
        self,
        data_path: str,
        max_title_length: int = 80,
        ttl_days: int = 7,
        assistant_name: str = "Assistant",
    ) -> None:
        self.root = Path(data_path)
        self.max_title_length = max_title_length
        self.ttl_days = ttl_days
        self.assistant_name = assistant_name
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("ConversationStore initialised at %s", self.root.resolve())

    # --------------------------------------------------------------------- #
    # Paths
    # --------------------------------------------------------------------- #
    def _user_dir(self, user_id: str) -> Path:
        return self.root / check_identifier("user_id", user_id)

    def _conversation_path(self, user_id: str, session_id: str) -> Path:
        return self._user_dir(user_id) / f"{check_identifier('session_id', session_id)}.json"

    # --------------------------------------------------------------------- #
    # Blocking helpers (run in a worker thread)
    # --------------------------------------------------------------------- #
    @staticmethod
    def _read_file(path: Path) -> Optional[Conversation]:
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Skipping unreadable conversation file %s: %s", path, exc)
            return None

    @staticmethod
    def _write_file(path: Path, conversation: Conversation) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(conversation.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    # --------------------------------------------------------------------- #
    # Conversation CRUD
    # --------------------------------------------------------------------- #
    async def create(self, user_id: str, session_id: str) -> Conversation:
        """Create (or reset) an empty conversation with the default title."""
        path = self._conversation_path(user_id, session_id)
        now = _utcnow()
        conversation = Conversation(
            session_id=session_id,
            user_id=user_id,
            title=DEFAULT_CONVERSATION_TITLE,
            messages=[],
            created_at=now,
            updated_at=now,
        )
        await anyio.to_thread.run_sync(self._write_file, path, conversation)
        logger.info("Conversation created user=%s session=%s", user_id, session_id)
        return conversation

    async def get(self, user_id: str, session_id: str) -> Optional[Conversation]:
        """Return the conversation, or None when it is absent or unreadable."""
        path = self._conversation_path(user_id, session_id)
        return await anyio.to_thread.run_sync(self._read_file, path)

    async def append_message(self, user_id: str, session_id: str, message: Message) -> Conversation:
        """
        Appends a message, creating the conversation first when it does not exist.
        The first user message replaces the default title.
        Returns the updated conversation.
        """
        conversation = await self.get(user_id, session_id)
        if conversation is None:
            conversation = await self.create(user_id, session_id)

        conversation.messages.append(message)

        if message.role == "user" and conversation.title == DEFAULT_CONVERSATION_TITLE:
            max_len = self.max_title_length
            text = message.content.strip()
            new_title = text[:max_len] + ("..." if len(text) > max_len else "")
            if new_title:
                conversation.title = new_title

        conversation.updated_at = _utcnow()
        path = self._conversation_path(user_id, session_id)
        await anyio.to_thread.run_sync(self._write_file, path, conversation)
        return conversation

    # --------------------------------------------------------------------- #
    # Listing
    # --------------------------------------------------------------------- #
    def _list_sync(self, user_id: str, cutoff: _dt.datetime) -> List[ConversationSummary]:
        user_dir = self._user_dir(user_id)
        if not user_dir.is_dir():
            return []

        summaries = []
        for path in user_dir.glob("*.json"):
            conv = self._read_file(path)
            if conv is None or conv.created_at < cutoff:
                continue
            summaries.append(
                ConversationSummary(
                    session_id=conv.session_id,
                    title=conv.title,
                    message_count=len(conv.messages),
                    created_at=conv.created_at,
                    updated_at=conv.updated_at,
                )
            )
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    async def list_for_user(
        self, user_id: str, days: int = 7, now: Optional[_dt.datetime] = None
    ) -> List[ConversationSummary]:
        """Summaries of conversations created in the last `days`, most recently updated first."""
        cutoff = (now or _utcnow()) - _dt.timedelta(days=days)
        return await anyio.to_thread.run_sync(self._list_sync, user_id, cutoff)

    # --------------------------------------------------------------------- #
    # Export
    # --------------------------------------------------------------------- #
    def render_markdown(self, conversation: Conversation, now: Optional[_dt.datetime] = None) -> str:
        exported_at = (now or _utcnow()).strftime("%Y-%m-%d %H:%M:%S UTC")
        parts = [f"# {conversation.title}\n\n", f"> Exported: {exported_at}\n\n---\n\n"]

        for msg in conversation.messages:
            if msg.role == "system":
                continue
            label = "User" if msg.role == "user" else self.assistant_name
            time = msg.timestamp.strftime("%H:%M:%S")
            parts.append(f"## {label} [{time}]\n\n{msg.content}\n\n---\n\n")

        return "".join(parts)

    async def export_to_text(
        self, user_id: str, session_id: str, now: Optional[_dt.datetime] = None
    ) -> Optional[str]:
        conversation = await self.get(user_id, session_id)
        if conversation is None:
            return None
        return self.render_markdown(conversation, now=now)

    # --------------------------------------------------------------------- #
    # Retention
    # --------------------------------------------------------------------- #
    def _sweep_sync(self, cutoff: _dt.datetime) -> int:
        deleted = 0
        if not self.root.is_dir():
            return 0

        for user_dir in self.root.iterdir():
            if not user_dir.is_dir():
                continue

            for path in user_dir.glob("*.json"):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                    stamp = data.get("updated_at") or data["created_at"]
                    last_modified = _dt.datetime.fromisoformat(stamp.replace("Z", "+00:00"))
                    if last_modified.tzinfo is None:
                        last_modified = last_modified.replace(tzinfo=_dt.timezone.utc)
                except (OSError, ValueError, KeyError, AttributeError) as exc:
                    logger.warning("Retention sweep skipping %s: %s", path, exc)
                    continue

                if last_modified < cutoff:
                    path.unlink(missing_ok=True)
                    deleted += 1

            if not any(user_dir.iterdir()):
                user_dir.rmdir()

        return deleted

    async def sweep(self, ttl_days: Optional[int] = None, now: Optional[_dt.datetime] = None) -> int:
        """Delete conversations not updated within the TTL. Returns how many were removed."""
        days = self.ttl_days if ttl_days is None else ttl_days
        cutoff = (now or _utcnow()) - _dt.timedelta(days=days)
        deleted = await anyio.to_thread.run_sync(self._sweep_sync, cutoff)
        logger.info("Retention sweep removed %d conversations older than %d days", deleted, days)
        return deleted
