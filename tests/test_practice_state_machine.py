"""
Tests for the practice phase reducer.

Coverage:
- Phase flow configuring → generating_profile → pitching → objections → evaluating → finished
- Effects emitted at each transition (timer, voice, evaluation)
- Ticks outside pitching/objections change nothing
- Evaluation failure falls back to the neutral evaluation
- Restart from any phase
"""
import pytest

from core.state_machine import (
    Effect,
    EventType,
    PracticeEvent,
    PracticePhase,
    PracticeState,
    PracticeStateMachine,
)


@pytest.fixture
def machine():
    return PracticeStateMachine()


def _event(event_type, **kwargs):
    return PracticeEvent(type=event_type, **kwargs)


@pytest.fixture
def pitching(machine, scenario_settings, profile):
    state = machine.apply(PracticeState(), _event(EventType.START, settings=scenario_settings)).state
    return machine.apply(state, _event(EventType.PROFILE_READY, profile=profile)).state


class TestStart:

    def test_start_requests_profile(self, machine, scenario_settings):
        result = machine.apply(PracticeState(), _event(EventType.START, settings=scenario_settings))
        assert result
        assert result.state.phase == PracticePhase.GENERATING_PROFILE
        assert result.effects == [Effect.REQUEST_PROFILE]

    def test_start_outside_configuring_ignored(self, machine, pitching, scenario_settings):
        result = machine.apply(pitching, _event(EventType.START, settings=scenario_settings))
        assert not result
        assert result.state is pitching
        assert result.effects == []

    def test_profile_ready_enters_pitching(self, pitching):
        assert pitching.phase == PracticePhase.PITCHING
        assert pitching.timer == 90
        assert pitching.profile is not None

    def test_profile_ready_effects_text_mode(self, machine, scenario_settings, profile):
        state = machine.apply(PracticeState(), _event(EventType.START, settings=scenario_settings)).state
        result = machine.apply(state, _event(EventType.PROFILE_READY, profile=profile))
        assert result.effects == [Effect.SEED_OPENING_LINE, Effect.START_TIMER]

    def test_profile_ready_connects_voice(self, machine, voice_settings, profile):
        state = machine.apply(PracticeState(), _event(EventType.START, settings=voice_settings)).state
        result = machine.apply(state, _event(EventType.PROFILE_READY, profile=profile))
        assert Effect.CONNECT_VOICE in result.effects

    def test_profile_failure_returns_to_configuring(self, machine, scenario_settings):
        state = machine.apply(PracticeState(), _event(EventType.START, settings=scenario_settings)).state
        result = machine.apply(state, _event(EventType.PROFILE_FAILED, error="timeout"))
        assert result.state.phase == PracticePhase.CONFIGURING
        assert result.effects == [Effect.NOTIFY_ERROR]


class TestCountdown:

    def test_tick_decrements(self, machine, pitching):
        result = machine.apply(pitching, _event(EventType.TICK))
        assert result.state.timer == 89
        assert result.state.phase == PracticePhase.PITCHING
        assert result.effects == []

    def test_pitching_zero_enters_objections_once(self, machine, pitching):
        state = pitching.model_copy(update={"timer": 1})
        result = machine.apply(state, _event(EventType.TICK))
        assert result.state.phase == PracticePhase.OBJECTIONS
        assert result.state.timer == 45
        assert result.effects == [Effect.INJECT_TRANSITION_LINE, Effect.START_TIMER]

        following = machine.apply(result.state, _event(EventType.TICK))
        assert following.state.phase == PracticePhase.OBJECTIONS
        assert following.state.timer == 44
        assert Effect.INJECT_TRANSITION_LINE not in following.effects

    def test_objections_zero_requests_evaluation(self, machine, pitching):
        state = pitching.model_copy(update={"phase": PracticePhase.OBJECTIONS, "timer": 1})
        result = machine.apply(state, _event(EventType.TICK))
        assert result.state.phase == PracticePhase.EVALUATING
        assert result.state.timer == 0
        assert result.effects == [Effect.STOP_TIMER, Effect.REQUEST_EVALUATION]

    def test_voice_mode_disconnects_before_evaluation(self, machine, voice_settings, profile):
        state = PracticeState(phase=PracticePhase.OBJECTIONS, settings=voice_settings,
                              profile=profile, timer=1)
        result = machine.apply(state, _event(EventType.TICK))
        assert result.effects == [Effect.STOP_TIMER, Effect.DISCONNECT_VOICE, Effect.REQUEST_EVALUATION]

    @pytest.mark.parametrize("phase", [
        PracticePhase.CONFIGURING, PracticePhase.GENERATING_PROFILE,
        PracticePhase.EVALUATING, PracticePhase.FINISHED,
    ])
    def test_tick_outside_active_phases_is_noop(self, machine, pitching, phase):
        state = pitching.model_copy(update={"phase": phase, "timer": 5})
        result = machine.apply(state, _event(EventType.TICK))
        assert not result
        assert result.state.timer == 5


class TestEvaluation:

    def test_evaluation_ready_finishes(self, machine, pitching, evaluation):
        state = pitching.model_copy(update={"phase": PracticePhase.EVALUATING, "timer": 0})
        result = machine.apply(state, _event(EventType.EVALUATION_READY, evaluation=evaluation))
        assert result.state.phase == PracticePhase.FINISHED
        assert result.state.evaluation == evaluation

    def test_evaluation_failure_uses_default(self, machine, pitching):
        state = pitching.model_copy(update={"phase": PracticePhase.EVALUATING, "timer": 0})
        result = machine.apply(state, _event(EventType.EVALUATION_FAILED, error="bad json"))
        evaluation = result.state.evaluation
        assert result.state.phase == PracticePhase.FINISHED
        assert set(evaluation.sub_scores().values()) == {5}
        assert evaluation.overall_score == 5
        assert evaluation.feedback
        assert result.effects == [Effect.NOTIFY_ERROR]

    def test_late_evaluation_after_restart_ignored(self, machine, evaluation):
        result = machine.apply(PracticeState(), _event(EventType.EVALUATION_READY, evaluation=evaluation))
        assert not result
        assert result.state.evaluation is None


class TestRestart:

    def test_restart_from_pitching(self, machine, pitching):
        result = machine.apply(pitching, _event(EventType.RESTART))
        assert result
        assert result.state == PracticeState()
        assert Effect.STOP_TIMER in result.effects
        assert Effect.DISCONNECT_VOICE in result.effects
        assert Effect.CANCEL_PENDING in result.effects
        assert Effect.CLEAR_CONVERSATION in result.effects

    def test_restart_when_already_configuring(self, machine):
        result = machine.apply(PracticeState(), _event(EventType.RESTART))
        assert not result
        assert result.state.phase == PracticePhase.CONFIGURING

    def test_repr(self, machine, pitching):
        assert "pitching" in repr(machine.apply(pitching, _event(EventType.RESTART)))
        assert repr(machine.apply(PracticeState(), _event(EventType.TICK))) == "<NoTransition>"
