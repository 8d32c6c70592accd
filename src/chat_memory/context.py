"""Host transcript state plus the naming rules derived from it."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from .typing import ChatMessage

GROUP_SCAN_WINDOW = 50
SYSTEM_NAME = "System"
DEFAULT_USER_NAME = "You"


@dataclass
class HostContext:
    """What the host application currently shows.

    ``chat`` is the live transcript and is mutated in place by the host (and
    by memory injection); everything else describes the active conversation.
    """
    chat: List[ChatMessage] = field(default_factory=list)
    character_name: str = ""
    characters: List[str] = field(default_factory=list)
    chat_id: Optional[str] = None
    user_name: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return len(self.characters) > 1

    def user_display_name(self) -> str:
        name = (self.user_name or "").strip()
        return name or DEFAULT_USER_NAME

    def chat_identifier(self) -> Optional[str]:
        if self.chat_id is None:
            return None
        trimmed = str(self.chat_id).strip()
        return trimmed or None

    def participants(self) -> List[str]:
        """Characters whose collections receive each chunk.

        In a group chat every non-user, non-system speaker of the last
        ``GROUP_SCAN_WINDOW`` messages joins the active character.
        """
        if self.is_group:
            found = dict.fromkeys([self.character_name] if self.character_name else [])
            for msg in self.chat[-GROUP_SCAN_WINDOW:]:
                name = msg.get("name")
                if not msg.get("is_user") and name and name != SYSTEM_NAME:
                    found[name] = None
            return list(found)
        return [self.character_name] if self.character_name else []


def sanitize_collection_part(value: object) -> str:
    s = str(value or "").lower()
    s = re.sub(r"[^a-z0-9_-]", "_", s)
    s = re.sub(r"_+", "_", s)
    return s.strip("_")


def collection_name(
    base: str,
    character_name: str,
    chat_id: Optional[str] = None,
    *,
    per_character: bool = True,
) -> str:
    """Qdrant collection used for ``character_name`` (and chat, when known)."""
    if not per_character:
        return base
    name = f"{base}_{sanitize_collection_part(character_name)}"
    if chat_id:
        chat = sanitize_collection_part(chat_id)
        if chat:
            name = f"{name}_{chat}"
    return name
