#!/usr/bin/env python3
"""
Terminal practice client.

Runs a full practice session from the terminal. In text mode every line
you type is a turn. In voice mode the microphone streams to the realtime
agent; press Enter to start talking and Enter again to hand the turn over
(manual turn detection), or just talk when server VAD is configured.

Usage:
    python -m voice.console --product "Aviva Tu Negocio" --mode Apurado
    python -m voice.console --difficulty Difícil --pitch 90 --qna 45 --voice

Commands while running:  /restart   /quit
"""
import argparse
import asyncio
import sys

from dotenv import load_dotenv

from config.settings import load_settings
from core.engine import PitchCoachEngine
from core.orchestrator import PracticeOrchestrator
from core.state_machine import PracticePhase
from models.schemas import (
    CustomerMode, DifficultyLevel, InteractionMode, PracticeSettings, Product,
)


class ConsoleView:
    """Prints completed turns, notices and phase changes as they happen."""

    def __init__(self):
        self._printed_messages: set[int] = set()
        self._printed_notices: set[str] = set()
        self._phase = ""
        self.finished = asyncio.Event()

    def __call__(self, snapshot: dict) -> None:
        if snapshot["phase"] != self._phase:
            self._phase = snapshot["phase"]
            print(f"\n── {self._phase.upper()} ({snapshot['timer']}s) ──")

        for message in snapshot["messages"]:
            if message["is_loading"] or message["id"] in self._printed_messages:
                continue
            self._printed_messages.add(message["id"])
            who = "Tú" if message["sender"] == "user" else "Cliente"
            print(f"{who}: {message['text']}")

        for notice in snapshot["notices"]:
            if notice["id"] not in self._printed_notices:
                self._printed_notices.add(notice["id"])
                print(f"[{notice['level']}] {notice['title']} {notice['description']}")

        if snapshot["phase"] == PracticePhase.FINISHED.value and snapshot["evaluation"] \
                and not self.finished.is_set():
            self._print_evaluation(snapshot["evaluation"])
            self.finished.set()

    def reset(self) -> None:
        self._printed_messages.clear()
        self._phase = ""

    @staticmethod
    def _print_evaluation(evaluation: dict) -> None:
        print("\n══ EVALUACIÓN ══")
        for key, value in evaluation.items():
            if key != "feedback":
                print(f"  {key:<24} {value}/10")
        print(f"\n{evaluation['feedback']}\n")


async def _read_line() -> str:
    return await asyncio.to_thread(sys.stdin.readline)


async def run(settings: PracticeSettings, config_path: str = None) -> None:
    app_settings = load_settings(config_path)
    orchestrator = PracticeOrchestrator(PitchCoachEngine(app_settings), settings=app_settings)
    view = ConsoleView()
    orchestrator.subscribe(view)

    voice = settings.interaction == InteractionMode.VOICE
    listening = False

    await orchestrator.start(settings)
    try:
        while not view.finished.is_set():
            reader = asyncio.ensure_future(_read_line())
            waiter = asyncio.ensure_future(view.finished.wait())
            done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            if reader not in done:
                reader.cancel()
                break

            line = reader.result()
            if line == "":
                break                               # EOF
            line = line.strip()

            if line == "/quit":
                break
            if line == "/restart":
                await orchestrator.restart()
                view.reset()
                await orchestrator.start(settings)
                continue

            if voice and not line:
                if listening:
                    listening = not orchestrator.stop_listening()
                else:
                    listening = orchestrator.start_listening()
                print("🎤 escuchando..." if listening else "⏸  turno enviado")
            elif line:
                await orchestrator.submit_user_message(line)
    finally:
        await orchestrator.shutdown()


def main(argv: list[str] = None) -> None:
    parser = argparse.ArgumentParser(description="Practice a sales pitch against a simulated customer")
    parser.add_argument("--product", choices=[p.value for p in Product], default=Product.CONTIGO.value)
    parser.add_argument("--mode", choices=[m.value for m in CustomerMode], default=CustomerMode.CURIOUS.value)
    parser.add_argument("--difficulty", choices=[d.value for d in DifficultyLevel],
                        default=DifficultyLevel.INTERMEDIATE.value)
    parser.add_argument("--pitch", type=int, default=120, help="Pitch phase length in seconds")
    parser.add_argument("--qna", type=int, default=60, help="Objections phase length in seconds")
    parser.add_argument("--voice", action="store_true", help="Talk through the realtime voice agent")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = PracticeSettings(
        product=Product(args.product),
        mode=CustomerMode(args.mode),
        difficulty_level=DifficultyLevel(args.difficulty),
        pitch_duration=args.pitch,
        qna_duration=args.qna,
        interaction=InteractionMode.VOICE if args.voice else InteractionMode.TEXT,
    )
    try:
        asyncio.run(run(settings, args.config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
