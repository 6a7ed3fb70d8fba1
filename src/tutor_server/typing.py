from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NotRequired, TypedDict


class Message(TypedDict):
    """A single chat message as stored and as fed to the generator."""

    role: str            # "user" | "assistant"
    content: str         # message text

    # Optional metadata fields (set by the chat store)
    id: NotRequired[str]          # short unique identifier
    timestamp: NotRequired[str]   # ISO-8601 UTC


@dataclass
class Profile:
    """Per-user personalization used to extend the system instruction."""

    interests: List[str] = field(default_factory=list)
    persona: str = ""

    def is_empty(self) -> bool:
        return not self.interests and not self.persona.strip()
