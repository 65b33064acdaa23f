from __future__ import annotations

"""Lock status and progress counts for goals given owned card records."""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .inventory import matching_records
from .models import AtLeastOne, CardRecord, Goal, NUniqueInCollection, ProofPolicy


@dataclass(frozen=True)
class UnlockStatus:
    locked: bool
    num_cards_collected: int
    num_cards_total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "locked": self.locked,
            "num_cards_collected": self.num_cards_collected,
            "num_cards_total": self.num_cards_total,
        }


def evaluate(
    policy: ProofPolicy,
    collection_card_indices: Iterable[int],
    owned: Iterable[CardRecord],
) -> UnlockStatus:
    """Evaluate `policy` against owned records.

    Matches are counted per record, so repeated scans of one card type each
    count toward an `NUniqueInCollection` threshold.
    """

    indices = set(collection_card_indices)
    match_count = len(matching_records(indices, owned))
    if isinstance(policy, NUniqueInCollection):
        return UnlockStatus(
            locked=match_count < policy.n,
            num_cards_collected=min(match_count, policy.n),
            num_cards_total=policy.n,
        )
    if isinstance(policy, AtLeastOne):
        return UnlockStatus(
            locked=bool(indices) and match_count == 0,
            num_cards_collected=min(match_count, 1),
            num_cards_total=1,
        )
    raise TypeError(f"Unsupported proof policy: {policy!r}")


def evaluate_goal(goal: Goal, owned: Iterable[CardRecord]) -> UnlockStatus:
    return evaluate(goal.policy, goal.collection_card_indices, owned)


def count_unlocked_powers(quest: Goal, owned: Iterable[CardRecord]) -> int:
    records = list(owned)
    return sum(1 for power in quest.powers if not evaluate_goal(power, records).locked)
