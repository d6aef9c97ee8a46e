from __future__ import annotations

import pytest

from fleetflow.conditions import ABSENT, compile_condition, evaluate, resolve_path
from fleetflow.errors import ConditionSyntaxError, ValidationError

hypothesis = pytest.importorskip("hypothesis")
st = hypothesis.strategies
given = hypothesis.given

STATE = {
    "review": {"decision": "approve", "confidence": 0.82, "labels": ["urgent", "backend"]},
    "count": 3,
    "name": "deploy-bot",
    "flags": {"dry_run": False},
    "items": [{"id": 1}, {"id": 2}],
}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("review.decision == 'approve'", True),
        ("state.review.decision == \"approve\"", True),
        ("review.confidence >= 0.8 && count < 5", True),
        ("review.confidence > 0.9 || count == 3", True),
        ("!flags.dry_run", True),
        ("review.labels contains 'urgent'", True),
        ("name contains 'bot'", True),
        ("items.1.id == 2", True),
        ("review.decision != 'approve'", False),
        ("count == 3 && (name == 'x' || review.decision == 'approve')", True),
        ("count == 3 && name == 'x' || review.decision == 'approve'", True),
        ("[1, 2, 3] contains count", True),
        ("flags.dry_run == false", True),
        ("missing == null", False),
    ],
)
def test_evaluate_expressions(expression: str, expected: bool) -> None:
    assert evaluate(expression, STATE) is expected


def test_missing_paths_are_absent_and_falsy() -> None:
    assert resolve_path(STATE, ["review", "nope"]) is ABSENT
    assert resolve_path(STATE, ["items", "9"]) is ABSENT
    assert evaluate("review.nope", STATE) is False
    assert evaluate("!review.nope", STATE) is True
    assert evaluate("review.nope != 'x'", STATE) is False


def test_consecutive_numeric_path_segments() -> None:
    state = {"grid": [[1, 2], [3, 4]], "scores": {"0": {"1": "hit"}}}

    assert evaluate("grid.0.1 == 2", state) is True
    assert evaluate("grid.1.0 == 3 && grid.1.1 > grid.0.1", state) is True
    assert evaluate("scores.0.1 == 'hit'", state) is True
    assert evaluate("grid.0.1 < 2.5", state) is True


def test_type_mismatch_comparison_is_false() -> None:
    assert evaluate("name > 3", STATE) is False


@pytest.mark.parametrize(
    "expression",
    [
        "count ==",
        "(count == 3",
        "count === 3",
        "count == 3 &&",
        "review.decision == 'open",
        "@x",
        "count in_list",
    ],
)
def test_syntax_errors_are_validation_errors(expression: str) -> None:
    with pytest.raises(ConditionSyntaxError) as excinfo:
        compile_condition(expression)

    assert isinstance(excinfo.value, ValidationError)
    assert excinfo.value.expression == expression


def test_compiled_conditions_are_cached() -> None:
    assert compile_condition("count == 3") is compile_condition("count == 3")


@given(value=st.integers(min_value=-1000, max_value=1000), bound=st.integers(min_value=-1000, max_value=1000))
def test_numeric_comparisons_match_python(value: int, bound: int) -> None:
    state = {"metrics": {"value": value}}

    assert evaluate(f"metrics.value < {bound}", state) is (value < bound)
    assert evaluate(f"metrics.value >= {bound}", state) is (value >= bound)
    assert evaluate(f"!(metrics.value == {bound})", state) is (value != bound)


@given(left=st.booleans(), right=st.booleans())
def test_boolean_operators_follow_truth_tables(left: bool, right: bool) -> None:
    state = {"a": left, "b": right}

    assert evaluate("a && b", state) is (left and right)
    assert evaluate("a || b", state) is (left or right)
    assert evaluate("!a || b", state) is ((not left) or right)


@given(key=st.text(alphabet="abcdefghij", min_size=1, max_size=8))
def test_unknown_keys_never_raise(key: str) -> None:
    assert evaluate(f"{key}.deep.path == 1", {}) is False
