from __future__ import annotations

import pytest

from jubmoji_quest.inventory import collected_indices, eligible_for, prerequisite_records
from jubmoji_quest.models import (
    AtLeastOne,
    CardRecord,
    Goal,
    GoalKind,
    NUniqueInCollection,
    PolicyError,
    parse_card_records,
    parse_policy,
)
from jubmoji_quest.unlock import count_unlocked_powers, evaluate


def test_n_unique_partial_collection_is_locked() -> None:
    status = evaluate(NUniqueInCollection(2), {3, 5}, [CardRecord(3, "a")])
    assert status.locked is True
    assert status.num_cards_collected == 1
    assert status.num_cards_total == 2


def test_n_unique_full_collection_unlocks() -> None:
    status = evaluate(NUniqueInCollection(2), {3, 5}, [CardRecord(3, "a"), CardRecord(5, "b")])
    assert status.locked is False
    assert status.num_cards_collected == 2


def test_n_unique_counts_repeated_scans_of_one_card_type() -> None:
    status = evaluate(NUniqueInCollection(2), {3, 5}, [CardRecord(3, "a"), CardRecord(3, "a2")])
    assert status.locked is False


@pytest.mark.parametrize("n", [1, 2, 3, 5])
def test_n_unique_lock_matches_threshold(n: int) -> None:
    owned = [CardRecord(3, "a"), CardRecord(5, "b"), CardRecord(9, "c"), CardRecord(5, "d")]
    status = evaluate(NUniqueInCollection(n), {3, 5}, owned)
    assert status.locked == (3 < n)
    assert status.num_cards_collected == min(3, n)
    assert status.num_cards_total == n


def test_at_least_one_with_empty_collection_is_never_locked() -> None:
    assert evaluate(AtLeastOne(), set(), []).locked is False
    assert evaluate(AtLeastOne(), set(), [CardRecord(1, "a")]).locked is False


def test_at_least_one_progress_is_capped_at_one() -> None:
    locked = evaluate(AtLeastOne(), {4}, [CardRecord(1, "a")])
    unlocked = evaluate(AtLeastOne(), {4}, [CardRecord(4, "a"), CardRecord(4, "b")])
    assert (locked.locked, locked.num_cards_collected, locked.num_cards_total) == (True, 0, 1)
    assert (unlocked.locked, unlocked.num_cards_collected, unlocked.num_cards_total) == (False, 1, 1)


def test_parse_policy_variants() -> None:
    assert parse_policy("N_UNIQUE_IN_COLLECTION", {"N": 3}) == NUniqueInCollection(3)
    assert parse_policy("IN_COLLECTION") == AtLeastOne()
    assert parse_policy("team_leaderboard", None) == AtLeastOne()
    assert parse_policy(None) == AtLeastOne()


@pytest.mark.parametrize(
    ("proof_type", "params"),
    [
        ("N_UNIQUE_IN_COLLECTION", None),
        ("N_UNIQUE_IN_COLLECTION", {"N": 0}),
        ("N_UNIQUE_IN_COLLECTION", {"N": "2"}),
        ("N_UNIQUE_IN_COLLECTION", {"N": True}),
        ("MYSTERY", {}),
    ],
)
def test_parse_policy_rejects_invalid_parameters(proof_type: str, params: dict | None) -> None:
    with pytest.raises(PolicyError):
        parse_policy(proof_type, params)


def test_card_records_parse_wire_shape() -> None:
    records = parse_card_records([{"pubKeyIndex": 3, "sig": "abc", "msgNonce": 7, "R": "r"}])
    assert records[0].pub_key_index == 3
    assert records[0].signature == "abc"
    assert records[0].raw_proof_material == {"msgNonce": 7, "R": "r"}
    assert records[0].to_dict()["sig"] == "abc"


@pytest.mark.parametrize("payload", [{"sig": "a"}, {"pubKeyIndex": -1, "sig": "a"}, {"pubKeyIndex": 1, "sig": " "}])
def test_card_records_reject_incomplete_payloads(payload: dict) -> None:
    with pytest.raises(ValueError):
        parse_card_records([payload])


def test_inventory_separates_prerequisites_from_eligible_collection() -> None:
    goal = Goal(
        kind=GoalKind.QUEST,
        id="1",
        name="q",
        policy=AtLeastOne(),
        collection_card_indices=frozenset({3}),
        prerequisite_card_indices=frozenset({0}),
    )
    owned = [CardRecord(0, "t"), CardRecord(3, "a"), CardRecord(3, "b")]
    assert [r.signature for r in eligible_for(goal, owned, {"a"})] == ["b"]
    assert [r.signature for r in prerequisite_records(goal, owned)] == ["t"]
    assert collected_indices(owned) == {0, 3}


def test_count_unlocked_powers() -> None:
    powers = (
        Goal(kind=GoalKind.POWER, id="p1", name="a", policy=NUniqueInCollection(2), collection_card_indices=frozenset({3, 5})),
        Goal(kind=GoalKind.POWER, id="p2", name="b", policy=AtLeastOne(), collection_card_indices=frozenset({6})),
        Goal(kind=GoalKind.POWER, id="p3", name="c", policy=AtLeastOne()),
    )
    quest = Goal(kind=GoalKind.QUEST, id="1", name="q", policy=AtLeastOne(), powers=powers)
    assert count_unlocked_powers(quest, [CardRecord(3, "a")]) == 1
    assert count_unlocked_powers(quest, [CardRecord(3, "a"), CardRecord(5, "b"), CardRecord(6, "c")]) == 3


def test_eligible_records_keep_one_record_per_signature() -> None:
    goal = Goal(
        kind=GoalKind.QUEST,
        id="1",
        name="q",
        policy=AtLeastOne(),
        collection_card_indices=frozenset({3, 5}),
        prerequisite_card_indices=frozenset({0}),
    )
    owned = [CardRecord(0, "t"), CardRecord(3, "a"), CardRecord(0, "t"), CardRecord(5, "b"), CardRecord(3, "a")]
    assert [r.signature for r in eligible_for(goal, owned, set())] == ["a", "b"]
    assert [r.signature for r in prerequisite_records(goal, owned)] == ["t"]
