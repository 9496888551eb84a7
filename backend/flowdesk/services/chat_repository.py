from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from flowdesk.db import get_db
from flowdesk.models.chat import Chat, ChatMessage, ChatMode, MessageRole


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatRepository:
    """Chats and their messages, persisted in SQLite."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    async def create_chat(self, workspace_id: str, title: str, mode: ChatMode = ChatMode.AGENT) -> Chat:
        chat = Chat(workspace_id=workspace_id, title=title, mode=mode)
        db = await get_db(self.db_path)
        try:
            await db.execute(
                """INSERT INTO chats (id, workspace_id, title, mode, has_pending_plan, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (chat.id, chat.workspace_id, chat.title, chat.mode.value,
                 int(chat.has_pending_plan), chat.created_at, chat.updated_at),
            )
            await db.commit()
        finally:
            await db.close()
        return chat

    async def add_message(self, chat_id: str, role: MessageRole, content: str) -> ChatMessage:
        message = ChatMessage(chat_id=chat_id, role=role, content=content)
        db = await get_db(self.db_path)
        try:
            await db.execute(
                "INSERT INTO chat_messages (id, chat_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (message.id, message.chat_id, message.role.value, message.content, message.created_at),
            )
            await db.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (message.created_at, chat_id))
            await db.commit()
        finally:
            await db.close()
        return message

    async def get_chat(self, chat_id: str) -> Chat | None:
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute("SELECT * FROM chats WHERE id = ?", (chat_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            chat = Chat.from_row(row)
            chat.messages = await self._messages(db, chat.id)
            return chat
        finally:
            await db.close()

    async def get_by_workspace(self, workspace_id: str) -> list[Chat]:
        """Chats of a workspace, most recently updated first, with their messages."""
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute(
                "SELECT * FROM chats WHERE workspace_id = ? ORDER BY updated_at DESC, rowid DESC",
                (workspace_id,),
            )
            chats = [Chat.from_row(r) for r in await cursor.fetchall()]
            for chat in chats:
                chat.messages = await self._messages(db, chat.id)
            return chats
        finally:
            await db.close()

    async def set_pending_plan(self, chat_id: str, pending: bool) -> None:
        db = await get_db(self.db_path)
        try:
            await db.execute(
                "UPDATE chats SET has_pending_plan = ?, updated_at = ? WHERE id = ?",
                (int(pending), _utcnow(), chat_id),
            )
            await db.commit()
        finally:
            await db.close()

    async def set_mode(self, chat_id: str, mode: ChatMode) -> None:
        db = await get_db(self.db_path)
        try:
            await db.execute("UPDATE chats SET mode = ? WHERE id = ?", (mode.value, chat_id))
            await db.commit()
        finally:
            await db.close()

    async def delete_chat(self, chat_id: str) -> bool:
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    @staticmethod
    async def _messages(db, chat_id: str) -> list[ChatMessage]:
        cursor = await db.execute(
            "SELECT * FROM chat_messages WHERE chat_id = ? ORDER BY created_at, rowid",
            (chat_id,),
        )
        return [ChatMessage.from_row(r) for r in await cursor.fetchall()]
