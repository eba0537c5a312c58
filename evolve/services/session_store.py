from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from evolve.config import settings
from evolve.errors import InvalidSessionId, ParseFailure
from evolve.services.json_documents import lock_for, read_json, write_json_atomic

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
DEFAULT_SESSION_NAME = "New chat"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise InvalidSessionId(f"Invalid session id: {session_id!r}")
    return session_id


def _summary(session: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": session["id"],
        "name": session.get("name") or DEFAULT_SESSION_NAME,
        "model": session.get("model"),
        "created": session.get("created"),
        "updated": session.get("updated"),
        "messageCount": len(session.get("messages") or []),
    }


class JsonSessionStore:
    """One JSON document per conversation under ``<data_dir>/sessions``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{validate_session_id(session_id)}.json"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = read_json(path)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"Session document {path.name} is not valid JSON") from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise ParseFailure(f"Session document {path.name} must be a JSON object")
        payload.setdefault("id", path.stem)
        payload.setdefault("messages", [])
        return payload

    @staticmethod
    def _new(session_id: str, *, name: str | None, model: str | None) -> dict[str, Any]:
        now = _now()
        return {
            "id": session_id,
            "name": name or DEFAULT_SESSION_NAME,
            "model": model or settings.chat_model,
            "created": now,
            "updated": now,
            "messages": [],
        }

    async def create(
        self,
        *,
        name: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        session_id = session_id or uuid4().hex
        path = self._path(session_id)
        async with lock_for(path):
            existing = await asyncio.to_thread(self._read, path)
            if existing is not None:
                return existing
            session = self._new(session_id, name=name, model=model)
            await asyncio.to_thread(write_json_atomic, path, session)
        logger.info(f"Created session {session_id}")
        return session

    async def list_sessions(self) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.directory.glob("*.json")):
            if not SESSION_ID_RE.match(path.stem):
                continue
            try:
                session = await asyncio.to_thread(self._read, path)
            except ParseFailure as exc:
                logger.warning(f"Skipping unreadable session: {exc}")
                continue
            if session is not None:
                summaries.append(_summary(session))
        summaries.sort(key=lambda item: item.get("updated") or "", reverse=True)
        return summaries

    async def get(self, session_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read, self._path(session_id))

    async def rename(self, session_id: str, name: str) -> dict[str, Any] | None:
        path = self._path(session_id)
        async with lock_for(path):
            session = await asyncio.to_thread(self._read, path)
            if session is None:
                return None
            session["name"] = name.strip() or DEFAULT_SESSION_NAME
            session["updated"] = _now()
            await asyncio.to_thread(write_json_atomic, path, session)
        return session

    async def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        async with lock_for(path):
            if not path.exists():
                return False
            await asyncio.to_thread(path.unlink)
        logger.info(f"Deleted session {session_id}")
        return True

    async def append_turn(
        self,
        session_id: str,
        user_message: str,
        answer: str,
        *,
        used_search: bool,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Append one user/assistant exchange, creating the session if needed."""
        path = self._path(session_id)
        async with lock_for(path):
            session = await asyncio.to_thread(self._read, path)
            if session is None:
                session = self._new(session_id, name=None, model=model)
            if not session["messages"] and session.get("name") in (None, "", DEFAULT_SESSION_NAME):
                session["name"] = " ".join(user_message.split())[:60] or DEFAULT_SESSION_NAME
            now = _now()
            session["messages"].extend(
                [
                    {"role": "user", "content": user_message, "time": now},
                    {"role": "assistant", "content": answer, "time": now, "usedSearch": used_search},
                ]
            )
            if model:
                session["model"] = model
            session["updated"] = now
            await asyncio.to_thread(write_json_atomic, path, session)
        return session

    async def history(self, session_id: str, window: int | None = None) -> list[dict[str, str]]:
        """The last ``window`` messages as chat messages (role and content only)."""
        window = settings.history_window if window is None else window
        session = await self.get(session_id)
        if session is None or window <= 0:
            return []
        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in session["messages"]
            if isinstance(m, dict) and m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
        ]
        return messages[-window:]


_store: JsonSessionStore | None = None


def get_session_store() -> JsonSessionStore:
    global _store
    if _store is None:
        _store = JsonSessionStore(Path(settings.data_dir) / "sessions")
    return _store
