"""
Practice State Machine — phases of one practice session.

    configuring ──start──▶ generating_profile ──profile──▶ pitching
         ▲                        │                           │ timer 0
         │◀──── profile failed ───┘                           ▼
         │                                                objections
         │                                                    │ timer 0
         │                                                    ▼
         │◀────────────── restart (any phase) ────────── evaluating
                                                              │ result / fallback
                                                              ▼
                                                          finished

apply() is a pure reducer: it never touches timers, sockets or tasks. It
returns the new state plus the effects the orchestrator must run.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from core.engine import default_evaluation
from models.schemas import (
    CustomerProfile,
    InteractionMode,
    PitchEvaluation,
    PracticeSettings,
)

logger = structlog.get_logger()


class PracticePhase(str, Enum):
    CONFIGURING = "configuring"
    GENERATING_PROFILE = "generating_profile"
    PITCHING = "pitching"
    OBJECTIONS = "objections"
    EVALUATING = "evaluating"
    FINISHED = "finished"


class EventType(str, Enum):
    START = "start"
    PROFILE_READY = "profile_ready"
    PROFILE_FAILED = "profile_failed"
    TICK = "tick"
    EVALUATION_READY = "evaluation_ready"
    EVALUATION_FAILED = "evaluation_failed"
    RESTART = "restart"


class Effect(str, Enum):
    REQUEST_PROFILE = "request_profile"
    SEED_OPENING_LINE = "seed_opening_line"
    INJECT_TRANSITION_LINE = "inject_transition_line"
    START_TIMER = "start_timer"
    STOP_TIMER = "stop_timer"
    CONNECT_VOICE = "connect_voice"
    DISCONNECT_VOICE = "disconnect_voice"
    REQUEST_EVALUATION = "request_evaluation"
    CANCEL_PENDING = "cancel_pending"
    CLEAR_CONVERSATION = "clear_conversation"
    NOTIFY_ERROR = "notify_error"


class PracticeEvent(BaseModel):
    type: EventType
    settings: Optional[PracticeSettings] = None
    profile: Optional[CustomerProfile] = None
    evaluation: Optional[PitchEvaluation] = None
    error: str = ""


class PracticeState(BaseModel):
    phase: PracticePhase = PracticePhase.CONFIGURING
    settings: Optional[PracticeSettings] = None
    profile: Optional[CustomerProfile] = None
    evaluation: Optional[PitchEvaluation] = None
    timer: int = 0                                # seconds left in the current phase


class TransitionResult:
    """Outcome of applying an event to the practice state."""

    def __init__(
        self,
        transitioned: bool,
        state: PracticeState,
        from_phase: PracticePhase,
        to_phase: PracticePhase,
        effects: list[Effect] = None,
    ):
        self.transitioned = transitioned
        self.state = state
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.effects = effects or []

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_phase.value} → {self.to_phase.value} [{len(self.effects)} effects]>"
        return "<NoTransition>"


class PracticeStateMachine:
    """Pure reducer over PracticeState."""

    def apply(self, state: PracticeState, event: PracticeEvent) -> TransitionResult:
        handler = {
            EventType.START: self._on_start,
            EventType.PROFILE_READY: self._on_profile_ready,
            EventType.PROFILE_FAILED: self._on_profile_failed,
            EventType.TICK: self._on_tick,
            EventType.EVALUATION_READY: self._on_evaluation,
            EventType.EVALUATION_FAILED: self._on_evaluation,
            EventType.RESTART: self._on_restart,
        }[event.type]
        result = handler(state, event)
        if result.transitioned and result.from_phase != result.to_phase:
            logger.info("practice_phase_changed", trigger=event.type.value,
                        from_phase=result.from_phase.value, to_phase=result.to_phase.value)
        return result

    # ── Handlers ──────────────────────────────────────────────

    @staticmethod
    def _unchanged(state: PracticeState, event: PracticeEvent) -> TransitionResult:
        if event.type != EventType.TICK:
            logger.debug("practice_event_ignored", trigger=event.type.value, phase=state.phase.value)
        return TransitionResult(False, state, state.phase, state.phase)

    def _on_start(self, state, event):
        if state.phase != PracticePhase.CONFIGURING or event.settings is None:
            return self._unchanged(state, event)
        new = PracticeState(phase=PracticePhase.GENERATING_PROFILE, settings=event.settings)
        return TransitionResult(True, new, state.phase, new.phase, [Effect.REQUEST_PROFILE])

    def _on_profile_ready(self, state, event):
        if state.phase != PracticePhase.GENERATING_PROFILE or event.profile is None:
            return self._unchanged(state, event)
        new = state.model_copy(update={
            "phase": PracticePhase.PITCHING,
            "profile": event.profile,
            "timer": state.settings.pitch_duration,
        })
        effects = [Effect.SEED_OPENING_LINE, Effect.START_TIMER]
        if state.settings.interaction == InteractionMode.VOICE:
            effects.append(Effect.CONNECT_VOICE)
        return TransitionResult(True, new, state.phase, new.phase, effects)

    def _on_profile_failed(self, state, event):
        if state.phase != PracticePhase.GENERATING_PROFILE:
            return self._unchanged(state, event)
        new = state.model_copy(update={"phase": PracticePhase.CONFIGURING})
        return TransitionResult(True, new, state.phase, new.phase, [Effect.NOTIFY_ERROR])

    def _on_tick(self, state, event):
        if state.phase not in (PracticePhase.PITCHING, PracticePhase.OBJECTIONS):
            return self._unchanged(state, event)

        remaining = state.timer - 1
        if remaining > 0:
            new = state.model_copy(update={"timer": remaining})
            return TransitionResult(True, new, state.phase, new.phase)

        if state.phase == PracticePhase.PITCHING:
            new = state.model_copy(update={
                "phase": PracticePhase.OBJECTIONS,
                "timer": state.settings.qna_duration,
            })
            return TransitionResult(True, new, state.phase, new.phase,
                                    [Effect.INJECT_TRANSITION_LINE, Effect.START_TIMER])

        new = state.model_copy(update={"phase": PracticePhase.EVALUATING, "timer": 0})
        effects = [Effect.STOP_TIMER]
        if state.settings.interaction == InteractionMode.VOICE:
            effects.append(Effect.DISCONNECT_VOICE)
        effects.append(Effect.REQUEST_EVALUATION)
        return TransitionResult(True, new, state.phase, new.phase, effects)

    def _on_evaluation(self, state, event):
        if state.phase != PracticePhase.EVALUATING:
            return self._unchanged(state, event)
        evaluation = event.evaluation
        effects = []
        if event.type == EventType.EVALUATION_FAILED or evaluation is None:
            evaluation = default_evaluation()
            effects.append(Effect.NOTIFY_ERROR)
        new = state.model_copy(update={"phase": PracticePhase.FINISHED, "evaluation": evaluation})
        return TransitionResult(True, new, state.phase, new.phase, effects)

    def _on_restart(self, state, event):
        effects = [
            Effect.STOP_TIMER,
            Effect.CANCEL_PENDING,
            Effect.DISCONNECT_VOICE,
            Effect.CLEAR_CONVERSATION,
        ]
        new = PracticeState()
        return TransitionResult(state != new, new, state.phase, new.phase, effects)
