"""Per-identity personalization profiles (interests + persona)."""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable

from .memory import PROFILE_FILE, load_json_or_none, safe_identity, write_json
from .typing import Profile

MAX_INTERESTS = 20
MAX_PERSONA_CHARS = 500


class ProfileStore:
    """Stores ``<data_dir>/<identity>/profile.json``.

    Limits are enforced here; violations raise ``ValueError`` and leave the
    stored profile untouched.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, identity: str) -> Path:
        return self.root / safe_identity(identity) / PROFILE_FILE

    def get(self, identity: str) -> Profile:
        data = load_json_or_none(self._path(identity))
        if not isinstance(data, dict):
            return Profile()
        return Profile(
            interests=[str(t) for t in data.get("interests", []) if str(t).strip()],
            persona=str(data.get("persona") or ""),
        )

    def _save(self, identity: str, profile: Profile) -> None:
        write_json(self._path(identity), {"interests": profile.interests, "persona": profile.persona})

    def set_interests(self, identity: str, interests: Iterable[str]) -> Profile:
        if isinstance(interests, str):
            raise ValueError("interests must be a list of strings")
        cleaned = [str(t).strip() for t in interests if str(t).strip()]
        if len(cleaned) > MAX_INTERESTS:
            raise ValueError(f"Cannot have more than {MAX_INTERESTS} interests")
        with self._lock:
            profile = self.get(identity)
            profile.interests = cleaned
            self._save(identity, profile)
        return profile

    def set_persona(self, identity: str, persona: str) -> Profile:
        if not isinstance(persona, str):
            raise ValueError("persona must be a string")
        if len(persona) > MAX_PERSONA_CHARS:
            raise ValueError(f"Persona cannot be more than {MAX_PERSONA_CHARS} characters")
        with self._lock:
            profile = self.get(identity)
            profile.persona = persona
            self._save(identity, profile)
        return profile

    def delete(self, identity: str) -> bool:
        with self._lock:
            path = self._path(identity)
            if not path.exists():
                return False
            path.unlink()
        return True
