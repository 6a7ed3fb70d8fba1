"""Disk-based chat storage keyed by identity (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .typing import Message

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
MAX_TITLE_CHARS = 100
ROLES = ("user", "assistant")
PROFILE_FILE = "profile.json"


# -----------------------------
# Helpers
# -----------------------------
def safe_identity(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    s = s.lstrip(".") or "default"
    return s[:128]  # avoid absurdly long filenames


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, obj: Any) -> None:
    atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def load_json_or_none(path: Path) -> Optional[Any]:
    """Read ``path``; a corrupt file is moved aside and treated as missing."""
    if not path.exists():
        return None
    try:
        return read_json(path)
    except (OSError, ValueError) as e:
        bad = path.with_suffix(".corrupt.json")
        logger.warning("Corrupt file %s (%s); moving to %s", path, e, bad)
        try:
            path.replace(bad)
        except OSError:
            logger.exception("Failed to move corrupt file %s", path)
        return None


def make_title(first_message: str, limit: int = 50) -> str:
    """Chat title derived from the first user message."""
    text = first_message.strip()
    return text[:limit] + ("..." if len(text) > limit else "")


# -----------------------------
# ChatStore
# -----------------------------
class ChatStore:
    """JSON-based per-identity chat store.

    Layout:
        data_dir/
          <identity>/chats/<chat_id>.json   # {id, title, created_at, updated_at, messages}
          <identity>/profile.json           # written by ProfileStore

    Messages are appended in order and never edited.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # --------- paths ----------
    def _chats_dir(self, identity: str) -> Path:
        return self.root / safe_identity(identity) / "chats"

    def _chat_path(self, identity: str, chat_id: str) -> Optional[Path]:
        # chat ids are generated hex strings; anything else cannot exist
        if not re.fullmatch(r"[0-9a-f]{32}", chat_id or ""):
            return None
        return self._chats_dir(identity) / f"{chat_id}.json"

    def _read_chat(self, identity: str, chat_id: str) -> Optional[Dict[str, Any]]:
        path = self._chat_path(identity, chat_id)
        if path is None:
            return None
        data = load_json_or_none(path)
        return data if isinstance(data, dict) else None

    # --------- chats ----------
    def create_chat(self, identity: str, title: Optional[str] = None) -> Dict[str, Any]:
        now = utc_now()
        chat = {
            "id": uuid.uuid4().hex,
            "title": (title or "").strip()[:MAX_TITLE_CHARS] or DEFAULT_TITLE,
            "created_at": now,
            "updated_at": now,
            "messages": [],
        }
        with self._lock:
            write_json(self._chat_path(identity, chat["id"]), chat)
        logger.debug("Created chat %s for %s", chat["id"], identity)
        return chat

    def list_chats(self, identity: str) -> List[Dict[str, Any]]:
        """Chats without their messages, most recently updated first."""
        out: List[Dict[str, Any]] = []
        chats_dir = self._chats_dir(identity)
        if not chats_dir.exists():
            return out
        for p in chats_dir.glob("*.json"):
            if p.name.endswith(".corrupt.json"):
                continue
            chat = self._read_chat(identity, p.stem)
            if chat is None:
                continue
            summary = {k: v for k, v in chat.items() if k != "messages"}
            summary["message_count"] = len(chat.get("messages", []))
            out.append(summary)
        out.sort(key=lambda c: c.get("updated_at", ""), reverse=True)
        return out

    def get_chat(self, identity: str, chat_id: str) -> Optional[Dict[str, Any]]:
        return self._read_chat(identity, chat_id)

    def load_messages(self, identity: str, chat_id: str) -> Optional[List[Message]]:
        chat = self._read_chat(identity, chat_id)
        if chat is None:
            return None
        return list(chat.get("messages", []))

    def append_message(self, identity: str, chat_id: str, role: str, content: str) -> Message:
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {role!r}")
        if not isinstance(content, str):
            raise ValueError("content must be a string")

        with self._lock:
            chat = self._read_chat(identity, chat_id)
            if chat is None:
                raise KeyError(chat_id)
            message: Message = {
                "id": uuid.uuid4().hex[:12],
                "role": role,
                "content": content,
                "timestamp": utc_now(),
            }
            chat.setdefault("messages", []).append(message)
            chat["updated_at"] = message["timestamp"]
            write_json(self._chat_path(identity, chat_id), chat)
        return message

    def rename_chat(self, identity: str, chat_id: str, title: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            chat = self._read_chat(identity, chat_id)
            if chat is None:
                return None
            chat["title"] = (title or "").strip()[:MAX_TITLE_CHARS] or DEFAULT_TITLE
            chat["updated_at"] = utc_now()
            write_json(self._chat_path(identity, chat_id), chat)
        return chat

    def delete_chat(self, identity: str, chat_id: str) -> bool:
        path = self._chat_path(identity, chat_id)
        if path is None:
            return False
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        return True

    # --------- aggregate ----------
    def list_identities(self) -> List[str]:
        """Return identities with at least one readable chat or a stored profile."""
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and self._is_user(p))

    def _is_user(self, user_dir: Path) -> bool:
        if (user_dir / PROFILE_FILE).exists():
            return True
        return bool(self.list_chats(user_dir.name))

    def stats(self) -> Dict[str, int]:
        total_chats = 0
        total_messages = 0
        identities = self.list_identities()
        for identity in identities:
            for chat in self.list_chats(identity):
                total_chats += 1
                total_messages += int(chat.get("message_count", 0))
        return {
            "total_users": len(identities),
            "total_chats": total_chats,
            "total_messages": total_messages,
        }
