from __future__ import annotations

"""Card registry lookups and collection display helpers."""

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .inventory import collected_indices
from .models import CardRecord, Goal


HIDDEN_GLYPH = "❓"


@dataclass(frozen=True)
class CardInfo:
    index: int
    emoji: str
    name: str = ""
    owner: str = ""
    edition: int | str | None = None
    telegram_chat_invite_link: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "emoji": self.emoji,
            "name": self.name,
            "owner": self.owner,
            "edition": self.edition,
            "telegram_chat_invite_link": self.telegram_chat_invite_link,
        }


class CardRegistry:
    """Read-only `pubKeyIndex -> CardInfo` mapping."""

    def __init__(self, cards: Iterable[CardInfo] = ()) -> None:
        self._cards = {card.index: card for card in cards}

    @classmethod
    def load(cls, path: Path) -> "CardRegistry":
        if not path.exists():
            raise ValueError(f"Card registry file not found: {path}")
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        raw_cards = payload.get("cards", []) if isinstance(payload, dict) else []
        if not isinstance(raw_cards, list):
            raise ValueError(f"Card registry must contain a list of cards: {path}")
        cards: list[CardInfo] = []
        seen: set[int] = set()
        for raw in raw_cards:
            if not isinstance(raw, dict) or not isinstance(raw.get("index"), int):
                raise ValueError(f"Card entry missing integer index in {path}: {raw!r}")
            index = raw["index"]
            if index in seen:
                raise ValueError(f"Duplicate card index detected: {index}")
            seen.add(index)
            cards.append(
                CardInfo(
                    index=index,
                    emoji=str(raw.get("emoji", "")),
                    name=str(raw.get("name", "")),
                    owner=str(raw.get("owner", "")),
                    edition=raw.get("edition"),
                    telegram_chat_invite_link=raw.get("telegram_chat_invite_link"),
                )
            )
        return cls(cards)

    def get(self, index: int) -> CardInfo | None:
        return self._cards.get(index)

    def all(self) -> list[CardInfo]:
        return [self._cards[key] for key in sorted(self._cards)]

    def __len__(self) -> int:
        return len(self._cards)


def collection_glyphs(goal: Goal, owned: Iterable[CardRecord], registry: CardRegistry) -> list[dict[str, Any]]:
    """Glyph per collection card; leaderboard quests hide cards the holder has not collected."""

    have = collected_indices(owned)
    rows: list[dict[str, Any]] = []
    for index in sorted(goal.collection_card_indices):
        collected = index in have
        card = registry.get(index)
        glyph = card.emoji if card is not None else HIDDEN_GLYPH
        if goal.shows_leaderboard and not collected:
            glyph = HIDDEN_GLYPH
        rows.append({"index": index, "glyph": glyph, "collected": collected})
    return rows
