import re

import pytest

from tally.database.sessions import IDLE_STATE
from tally.engine.registry import (
    NOT_UNDERSTOOD,
    Control,
    FlowDefinition,
    StepKind,
    StepRegistry,
    control_pattern,
)
from tally.flows.survey import (
    SURVEY_AWAITING_COMMENT,
    SURVEY_INVITATION,
    SURVEY_QUESTION,
    default_registry,
)


def test_control_id_wins_over_state():
    registry = default_registry()
    route = registry.resolve(SURVEY_QUESTION, "btn_survey_decline")
    assert route.kind == StepKind.DECLINE
    assert route.flow == "survey"


def test_rating_control_binds_value_and_step():
    registry = default_registry()

    route = registry.resolve(IDLE_STATE, "btn_rating_3_5")
    assert route.kind == StepKind.RATING
    assert route.param == 5
    assert route.step == 3

    bare = registry.resolve(IDLE_STATE, "btn_rating_4")
    assert bare.param == 4
    assert bare.step is None


def test_free_text_routes_by_state():
    registry = default_registry()
    assert registry.resolve(SURVEY_INVITATION).kind == StepKind.INVITATION
    assert registry.resolve(SURVEY_QUESTION).kind == StepKind.RATING
    assert registry.resolve(SURVEY_AWAITING_COMMENT).kind == StepKind.COMMENT_TEXT
    assert registry.resolve(IDLE_STATE).kind == StepKind.IDLE


def test_unmapped_control_falls_back_to_state():
    registry = default_registry()
    assert registry.resolve(SURVEY_QUESTION, "btn_unknown").kind == StepKind.RATING


def test_unknown_state_is_not_understood():
    registry = default_registry()
    assert registry.resolve("retired_state") == NOT_UNDERSTOOD
    assert registry.resolve("retired_state", "btn_unknown") == NOT_UNDERSTOOD


def test_register_rejects_state_without_handler():
    flow = FlowDefinition(name="broken", states=("a", "b"), state_kinds={"a": StepKind.IDLE})
    with pytest.raises(ValueError, match="without a handler"):
        StepRegistry().register(flow)


def test_register_rejects_undeclared_state():
    flow = FlowDefinition(
        name="broken",
        states=("a",),
        state_kinds={"a": StepKind.IDLE, "ghost": StepKind.IDLE},
    )
    with pytest.raises(ValueError, match="does not declare"):
        StepRegistry().register(flow)


def test_register_rejects_duplicates():
    registry = default_registry()
    clash = FlowDefinition(
        name="other",
        states=("other_state",),
        state_kinds={"other_state": StepKind.IDLE},
        controls={"btn_survey_accept": Control(StepKind.ACCEPT)},
    )
    with pytest.raises(ValueError, match="already registered"):
        registry.register(clash)

    with pytest.raises(ValueError, match="already handled"):
        registry.register(
            FlowDefinition(name="again", states=(IDLE_STATE,), state_kinds={IDLE_STATE: StepKind.IDLE})
        )


def test_pattern_needs_param_group():
    flow = FlowDefinition(
        name="bad_pattern",
        states=("x",),
        state_kinds={"x": StepKind.IDLE},
        control_patterns=((re.compile(r"btn_x_\d+"), StepKind.RATING),),
    )
    with pytest.raises(ValueError, match="param"):
        StepRegistry().register(flow)


def test_control_pattern():
    pattern = control_pattern("btn_rating_")
    assert pattern.fullmatch("btn_rating_12_3").groupdict() == {"step": "12", "param": "3"}
    assert pattern.fullmatch("btn_rating_x") is None


def test_stats():
    stats = default_registry().stats()
    assert stats == {"flows": 3, "states": 6, "controls": 6}
