"""
Practice Orchestrator — drives one practice session end to end.

Owns the phase state, the conversation, the countdown and (in voice mode)
the realtime voice session. Every state change goes through dispatch(),
which runs the reducer and then executes the effects it asks for.

Async work is spawned as tracked tasks, each single-flight:
- profile generation
- avatar response streaming (text mode)
- voice connect
- evaluation (never run inside the countdown's own task)

restart() bumps an epoch; any task that finishes under an older epoch
drops its result.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Callable, Optional

from config.settings import Settings, get_settings
from core.engine import PitchCoachEngine
from core.prompts import realtime_instructions
from core.state_machine import (
    Effect,
    EventType,
    PracticeEvent,
    PracticePhase,
    PracticeState,
    PracticeStateMachine,
    TransitionResult,
)
from core.timer import Countdown
from models.schemas import Notice, PracticeSettings, Sender, VoiceAgentState
from voice.realtime import RealtimeVoiceSession, VoiceSessionError
from voice.transcript import TextStreamAdapter, TranscriptReconciler

logger = structlog.get_logger()

ACTIVE_PHASES = (PracticePhase.PITCHING, PracticePhase.OBJECTIONS)


class PracticeOrchestrator:
    """
    Usage:
        orchestrator = PracticeOrchestrator(engine)
        await orchestrator.start(PracticeSettings(...))
        await orchestrator.submit_user_message("Hola, le quiero presentar...")
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        engine: PitchCoachEngine,
        settings: Optional[Settings] = None,
        voice_factory: Callable[..., RealtimeVoiceSession] = RealtimeVoiceSession,
    ):
        self._settings = settings or get_settings()
        self._engine = engine
        self._voice_factory = voice_factory
        self._machine = PracticeStateMachine()

        self.state = PracticeState()
        self.transcript = TranscriptReconciler()
        self.notices: list[Notice] = []
        self.voice_state = VoiceAgentState()

        self._countdown = Countdown(self.tick, interval=self._settings.practice.tick_interval_s)
        self._voice: Optional[RealtimeVoiceSession] = None
        self._epoch = 0
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[Callable[[dict[str, Any]], None]] = []

        self.transcript.subscribe(lambda _messages: self._notify())

    # ── Observers ─────────────────────────────────────────────

    def subscribe(self, listener: Callable[[dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[dict[str, Any]], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.state.phase.value,
            "timer": self.state.timer,
            "settings": self.state.settings.model_dump(mode="json", by_alias=True) if self.state.settings else None,
            "profile": self.state.profile.model_dump(mode="json", by_alias=True) if self.state.profile else None,
            "evaluation": self.state.evaluation.model_dump(mode="json", by_alias=True) if self.state.evaluation else None,
            "messages": [m.model_dump(mode="json") for m in self.transcript.messages],
            "voice": self.voice_state.model_dump(mode="json"),
            "notices": [n.model_dump(mode="json") for n in self.notices],
        }

    @property
    def is_busy(self) -> bool:
        """True while an avatar response is streaming."""
        return self._pending("response")

    # ── Commands ──────────────────────────────────────────────

    async def start(self, settings: PracticeSettings) -> bool:
        result = await self.dispatch(PracticeEvent(type=EventType.START, settings=settings))
        return bool(result)

    async def submit_user_message(self, text: str) -> bool:
        """Text mode: append the user's turn and stream the customer's reply."""
        text = (text or "").strip()
        if not text or self.state.phase not in ACTIVE_PHASES:
            return False
        if self._pending("response"):
            logger.info("user_message_dropped", reason="response_in_flight")
            return False

        self.transcript.add_turn(Sender.USER, text)
        turn_number = self.transcript.user_turn_count()
        self._spawn("response", self._respond(self._epoch, turn_number))
        return True

    def start_listening(self) -> bool:
        if self._voice is None or self.state.phase not in ACTIVE_PHASES:
            return False
        return self._voice.start_listening()

    def stop_listening(self) -> bool:
        if self._voice is None:
            return False
        return self._voice.stop_listening()

    async def tick(self) -> None:
        await self.dispatch(PracticeEvent(type=EventType.TICK))

    async def restart(self) -> None:
        self._epoch += 1
        await self.dispatch(PracticeEvent(type=EventType.RESTART))

    async def shutdown(self) -> None:
        await self.restart()
        self._listeners.clear()

    async def settle(self) -> None:
        """Wait until no profile, response, connect or evaluation task is pending."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch(self, event: PracticeEvent) -> TransitionResult:
        result = self._machine.apply(self.state, event)
        self.state = result.state
        for effect in result.effects:
            await self._run_effect(effect, event)
        if result.transitioned or result.effects:
            self._notify()
        return result

    async def _run_effect(self, effect: Effect, event: PracticeEvent) -> None:
        if effect == Effect.REQUEST_PROFILE:
            self._spawn("profile", self._generate_profile(self._epoch))

        elif effect == Effect.SEED_OPENING_LINE:
            self.transcript.add_turn(Sender.AVATAR, self._settings.practice.opening_line)

        elif effect == Effect.INJECT_TRANSITION_LINE:
            self.transcript.add_turn(Sender.AVATAR, self._settings.practice.transition_line)

        elif effect == Effect.START_TIMER:
            self._countdown.start()

        elif effect == Effect.STOP_TIMER:
            self._countdown.cancel()

        elif effect == Effect.CONNECT_VOICE:
            self._spawn("voice", self._connect_voice(self._epoch))

        elif effect == Effect.DISCONNECT_VOICE:
            await self._disconnect_voice()

        elif effect == Effect.REQUEST_EVALUATION:
            self._spawn("evaluation", self._evaluate(self._epoch))

        elif effect == Effect.CANCEL_PENDING:
            await self._cancel_pending()

        elif effect == Effect.CLEAR_CONVERSATION:
            self.transcript.clear()
            self.voice_state = VoiceAgentState()

        elif effect == Effect.NOTIFY_ERROR:
            self._post_notice(self._error_title(event.type), event.error, level="error")

    # ── Tasks ─────────────────────────────────────────────────

    async def _generate_profile(self, epoch: int) -> None:
        settings = self.state.settings
        try:
            profile = await self._engine.generate_customer_profile(settings)
        except Exception as e:
            logger.error("profile_generation_failed", error=str(e))
            if epoch == self._epoch:
                await self.dispatch(PracticeEvent(type=EventType.PROFILE_FAILED, error=str(e)))
            return
        if epoch != self._epoch:
            logger.info("stale_profile_dropped", epoch=epoch)
            return
        await self.dispatch(PracticeEvent(type=EventType.PROFILE_READY, profile=profile))

    async def _respond(self, epoch: int, turn_number: int) -> None:
        adapter = TextStreamAdapter(self.transcript)
        chunks = self._engine.stream_avatar_response(
            self.state.settings, self.state.profile, self.transcript.history(), turn_number,
        )
        try:
            await adapter.consume(chunks)
        except Exception as e:
            logger.error("avatar_response_failed", turn=turn_number, error=str(e))
            if epoch == self._epoch:
                self._post_notice("El cliente no pudo responder", str(e), level="error")

    async def _connect_voice(self, epoch: int) -> None:
        if self._voice is None:
            self._voice = self._voice_factory(
                sink=self.transcript,
                config=self._settings.realtime,
                on_state_change=self._on_voice_state,
                on_error=self._on_voice_error,
            )
        voice = self._voice
        instructions = realtime_instructions(
            self.state.settings.product, self.state.settings.mode, self.state.profile,
        )
        try:
            await voice.connect(instructions)
        except VoiceSessionError as e:
            if epoch == self._epoch:
                self._post_notice("No se pudo conectar la voz", f"{e.stage}: {e}", level="error")

    async def _disconnect_voice(self) -> None:
        voice, self._voice = self._voice, None
        if voice is not None:
            await voice.disconnect()
        self.voice_state = VoiceAgentState()

    async def _evaluate(self, epoch: int) -> None:
        try:
            evaluation = await self._engine.evaluate_pitch(
                self.state.settings.product, self.state.profile, self.transcript.history(),
            )
        except Exception as e:
            logger.error("evaluation_failed", error=str(e))
            if epoch == self._epoch:
                await self.dispatch(PracticeEvent(type=EventType.EVALUATION_FAILED, error=str(e)))
            return
        if epoch != self._epoch:
            logger.info("stale_evaluation_dropped", epoch=epoch)
            return
        await self.dispatch(PracticeEvent(type=EventType.EVALUATION_READY, evaluation=evaluation))

    def _spawn(self, name: str, coro) -> None:
        if self._pending(name):
            coro.close()
            logger.info("task_already_pending", task=name)
            return
        self._tasks[name] = asyncio.get_running_loop().create_task(coro)

    def _pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def _cancel_pending(self) -> None:
        current = asyncio.current_task()
        cancelled = []
        for task in self._tasks.values():
            if task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._tasks.clear()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
            logger.info("pending_tasks_cancelled", count=len(cancelled))

    # ── Notices & voice callbacks ─────────────────────────────

    def _post_notice(self, title: str, description: str = "", level: str = "info") -> None:
        self.notices.append(Notice(title=title, description=description, level=level))
        self._notify()

    @staticmethod
    def _error_title(event_type: EventType) -> str:
        if event_type == EventType.PROFILE_FAILED:
            return "No se pudo generar el cliente"
        if event_type == EventType.EVALUATION_FAILED:
            return "Evaluación no disponible"
        return "Error"

    def _on_voice_state(self, state: VoiceAgentState) -> None:
        self.voice_state = state
        self._notify()

    def _on_voice_error(self, message: str) -> None:
        self._post_notice("Error de voz", message, level="error")

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
