from __future__ import annotations

import pytest

from fleetflow.consensus import (
    compute_consensus,
    MaxConfidenceTieBreaker,
    resolve_tie_breaker,
    StableOrderTieBreaker,
)
from fleetflow.errors import ConsensusFailure
from fleetflow.models import (
    AgentResult,
    ConsensusAlgorithm,
    ConsensusConfig,
    HUMAN_REVIEW_DECISION,
)

hypothesis = pytest.importorskip("hypothesis")
st = hypothesis.strategies
given = hypothesis.given


def _result(member: str, content: object, *, confidence: float = 1.0, error: str | None = None) -> AgentResult:
    return AgentResult(member_name=member, content=content, confidence=confidence, error=error)


def test_weighted_vote_picks_heaviest_decision() -> None:
    results = [_result("A", "approve"), _result("B", "reject"), _result("C", "approve")]
    config = ConsensusConfig(algorithm=ConsensusAlgorithm.WEIGHTED)

    outcome = compute_consensus(results, config, weights={"A": 2.0, "B": 1.0, "C": 1.0})

    assert outcome.decision == "approve"
    assert outcome.confidence == pytest.approx(0.75)
    assert not outcome.human_review
    assert outcome.metadata["winners"] == ["A", "C"]


def test_majority_tie_defers_to_human_review() -> None:
    results = [_result("A", "approve"), _result("B", "reject")]

    outcome = compute_consensus(results, ConsensusConfig())

    assert outcome.human_review
    assert outcome.decision == HUMAN_REVIEW_DECISION
    assert outcome.metadata["reason"] == "no_majority"


def test_majority_groups_equivalent_text_answers() -> None:
    results = [_result("A", "Approve "), _result("B", "approve"), _result("C", "reject")]

    outcome = compute_consensus(results, ConsensusConfig())

    assert outcome.decision == "Approve "
    assert outcome.confidence == pytest.approx(2 / 3)


def test_failed_results_do_not_vote() -> None:
    results = [
        _result("A", "approve"),
        _result("B", None, confidence=0.0, error="boom"),
        _result("C", "approve"),
    ]

    outcome = compute_consensus(results, ConsensusConfig(min_votes=2))

    assert outcome.decision == "approve"
    assert outcome.confidence == pytest.approx(1.0)
    assert outcome.metadata["participants"] == ["A", "C"]
    assert outcome.metadata["failed"] == [{"member": "B", "error": "boom"}]


def test_insufficient_votes_raise_consensus_failure() -> None:
    results = [_result("A", "approve"), _result("B", None, error="timeout")]

    with pytest.raises(ConsensusFailure) as excinfo:
        compute_consensus(results, ConsensusConfig(min_votes=2))

    assert excinfo.value.required == 2
    assert excinfo.value.received == 1


def test_allow_partial_marks_result_partial() -> None:
    results = [_result("A", "approve"), _result("B", None, error="timeout")]

    outcome = compute_consensus(results, ConsensusConfig(min_votes=2, allow_partial=True))

    assert outcome.decision == "approve"
    assert outcome.metadata["partial"] is True


def test_no_participants_with_allow_partial_is_human_review() -> None:
    results = [_result("A", None, error="down")]

    outcome = compute_consensus(results, ConsensusConfig(allow_partial=True))

    assert outcome.human_review
    assert outcome.metadata["reason"] == "no_participants"


def test_low_confidence_becomes_human_review_override() -> None:
    results = [_result("A", "x"), _result("B", "x"), _result("C", "y")]

    outcome = compute_consensus(results, ConsensusConfig(min_confidence=0.9))

    assert outcome.human_review
    assert outcome.decision == HUMAN_REVIEW_DECISION
    assert outcome.metadata["override"] == "min_confidence"
    assert outcome.metadata["original_decision"] == "x"


def test_unanimous_requires_single_answer() -> None:
    agree = compute_consensus(
        [_result("A", {"v": 1}), _result("B", {"v": 1})],
        ConsensusConfig(algorithm=ConsensusAlgorithm.UNANIMOUS),
    )
    disagree = compute_consensus(
        [_result("A", {"v": 1}), _result("B", {"v": 2})],
        ConsensusConfig(algorithm=ConsensusAlgorithm.UNANIMOUS),
    )

    assert agree.decision == {"v": 1}
    assert agree.confidence == 1.0
    assert disagree.human_review
    assert disagree.metadata["reason"] == "disagreement"


def test_first_wins_adopts_head_and_keeps_late_results() -> None:
    results = [_result("fast", "first", confidence=0.4), _result("slow", "second")]

    outcome = compute_consensus(
        results, ConsensusConfig(algorithm=ConsensusAlgorithm.FIRST_WINS)
    )

    assert outcome.decision == "first"
    assert outcome.confidence == pytest.approx(0.4)
    assert outcome.metadata["winner"] == "fast"
    assert [entry["member"] for entry in outcome.metadata["late_results"]] == ["slow"]


def test_human_review_algorithm_always_defers() -> None:
    outcome = compute_consensus(
        [_result("A", "yes")], ConsensusConfig(algorithm=ConsensusAlgorithm.HUMAN_REVIEW)
    )

    assert outcome.human_review
    assert outcome.decision == HUMAN_REVIEW_DECISION


def test_weighted_tie_uses_lexicographic_by_default() -> None:
    results = [_result("A", "reject"), _result("B", "approve")]

    outcome = compute_consensus(results, ConsensusConfig(algorithm=ConsensusAlgorithm.WEIGHTED))

    assert outcome.decision == "approve"
    assert outcome.metadata["tie_breaker"] == "lexicographic"
    assert outcome.metadata["tied"] == ["reject", "approve"]


def test_weighted_tie_with_configured_breakers() -> None:
    results = [_result("A", "reject", confidence=0.9), _result("B", "approve", confidence=0.2)]

    stable = compute_consensus(
        results,
        ConsensusConfig(algorithm=ConsensusAlgorithm.WEIGHTED, tie_breaker="stable_order"),
    )
    confident = compute_consensus(
        results,
        ConsensusConfig(algorithm=ConsensusAlgorithm.WEIGHTED, tie_breaker="max_confidence"),
    )

    assert stable.decision == "reject"
    assert confident.decision == "reject"
    assert isinstance(resolve_tie_breaker("stable_order"), StableOrderTieBreaker)
    assert isinstance(resolve_tie_breaker("max_confidence"), MaxConfidenceTieBreaker)


def test_unknown_tie_breaker_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_tie_breaker("coin_flip")


def test_zero_total_weight_defers() -> None:
    outcome = compute_consensus(
        [_result("A", "x"), _result("B", "x")],
        ConsensusConfig(),
        weights={"A": 0.0, "B": 0.0},
    )

    assert outcome.human_review
    assert outcome.metadata["reason"] == "zero_total_weight"


@given(
    yes=st.integers(min_value=0, max_value=6),
    no=st.integers(min_value=0, max_value=6),
)
def test_majority_needs_strictly_more_than_half(yes: int, no: int) -> None:
    hypothesis.assume(yes + no > 0)
    results = [_result(f"y{i}", "yes") for i in range(yes)]
    results += [_result(f"n{i}", "no") for i in range(no)]

    outcome = compute_consensus(results, ConsensusConfig())

    if yes * 2 > yes + no:
        assert outcome.decision == "yes"
        assert outcome.confidence == pytest.approx(yes / (yes + no))
    elif no * 2 > yes + no:
        assert outcome.decision == "no"
    else:
        assert outcome.human_review


@given(
    weights=st.lists(st.floats(min_value=0.1, max_value=10.0), min_size=1, max_size=6),
    choices=st.lists(st.sampled_from(["a", "b", "c"]), min_size=6, max_size=6),
)
def test_weighted_confidence_is_winner_share(weights: list[float], choices: list[str]) -> None:
    results = [_result(f"m{i}", choices[i]) for i in range(len(weights))]
    weight_map = {f"m{i}": weight for i, weight in enumerate(weights)}

    outcome = compute_consensus(
        results, ConsensusConfig(algorithm=ConsensusAlgorithm.WEIGHTED), weights=weight_map
    )

    assert 0.0 < outcome.confidence <= 1.0
    assert outcome.confidence == pytest.approx(outcome.metadata["winner_weight"] / sum(weights))
