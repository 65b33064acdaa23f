from __future__ import annotations

"""Read-only matching helpers over a caller-supplied list of owned card records."""

from collections.abc import Iterable

from .models import CardRecord, Goal


def matching_records(indices: Iterable[int], owned: Iterable[CardRecord]) -> list[CardRecord]:
    wanted = set(indices)
    return [record for record in owned if record.pub_key_index in wanted]


def unique_by_signature(records: Iterable[CardRecord]) -> list[CardRecord]:
    """First record per signature, in input order."""

    seen: set[str] = set()
    unique: list[CardRecord] = []
    for record in records:
        if record.signature in seen:
            continue
        seen.add(record.signature)
        unique.append(record)
    return unique


def eligible_for(goal: Goal, owned: Iterable[CardRecord], spent: Iterable[str]) -> list[CardRecord]:
    """Collection-card records for `goal` whose signatures have not been spent.

    A signature appears at most once, so a repeated scan is proved and scored once.
    """

    spent_set = set(spent)
    return [
        record
        for record in unique_by_signature(matching_records(goal.collection_card_indices, owned))
        if record.signature not in spent_set
    ]


def prerequisite_records(goal: Goal, owned: Iterable[CardRecord]) -> list[CardRecord]:
    # Prerequisite cards gate participation and are never nullified.
    return unique_by_signature(matching_records(goal.prerequisite_card_indices, owned))


def collected_indices(owned: Iterable[CardRecord]) -> set[int]:
    return {record.pub_key_index for record in owned}
