from hypothesis import given
from hypothesis import strategies as st

from pushdeploy.models.deployment import TERMINAL_STATES, DeployState, HealthVerdict

OUTCOMES = {"succeeded", "rolled_back", "failed", "aborted"}


@given(st.sampled_from([member.value for member in DeployState]))
def test_deploy_state_values_are_lowercase(value: str) -> None:
    assert value == value.lower()


def test_terminal_states_are_exactly_the_four_outcomes() -> None:
    assert {state.value for state in DeployState if state.terminal} == OUTCOMES
    assert {state.value for state in TERMINAL_STATES} == OUTCOMES


@given(st.sampled_from(list(DeployState)))
def test_only_outcome_states_are_terminal(state: DeployState) -> None:
    assert state.terminal is (state.value in OUTCOMES)


@given(st.sampled_from([member.value for member in HealthVerdict]))
def test_health_verdict_values_are_lowercase(value: str) -> None:
    assert value == value.lower()
