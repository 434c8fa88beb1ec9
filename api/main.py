"""
FastAPI Application — REST API + WebSocket for the pitch coach.

Provides:
- Realtime credential intermediary (short-lived tokens for voice clients)
- Practice endpoints: profile generation, streamed avatar replies, evaluation
- WebSocket endpoint for a text-mode practice session
- Competition endpoints: star ratings, word cloud, voting switch
"""
from __future__ import annotations

import json
import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from config.settings import get_settings
from models.schemas import (
    CustomerProfile, InteractionMode, PracticeSettings, Product,
)
from core.engine import CoachEngineError, PitchCoachEngine, SchemaViolationError
from core.orchestrator import PracticeOrchestrator
from competition import (
    CompetitionStore, UnknownGroupError, VotingClosedError, aggregate, word_cloud_data,
)
from voice.credentials import CredentialError, mint_ephemeral_token

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

coach_engine = PitchCoachEngine()
competition_store = CompetitionStore()
active_sessions: set[PracticeOrchestrator] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("pitchcoach_started",
                llm_provider=settings.llm.provider,
                realtime_model=settings.realtime.model,
                turn_detection=settings.realtime.turn_detection)
    yield

    for session in list(active_sessions):
        await session.shutdown()
    active_sessions.clear()
    logger.info("pitchcoach_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="PitchCoach API",
    description="Sales-pitch practice with a simulated customer, plus audience voting",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class RealtimeSessionRequest(BaseModel):
    instructions: str = ""


class HistoryTurn(BaseModel):
    sender: str = Field(pattern="^(user|avatar)$")
    text: str


class AvatarResponseRequest(BaseModel):
    settings: PracticeSettings
    profile: CustomerProfile
    history: list[HistoryTurn] = []
    turn_number: int = Field(1, ge=1)


class EvaluateRequest(BaseModel):
    product: Product
    profile: CustomerProfile
    conversation: list[HistoryTurn]


class RatingRequest(BaseModel):
    user_id: str = Field(min_length=1)
    group_number: int = Field(ge=1)
    stars: int = Field(ge=1, le=5)


class WordRequest(BaseModel):
    user_id: str = Field(min_length=1)
    group_number: int = Field(ge=1)
    word: str = Field(min_length=1, max_length=30)


class VotingToggleRequest(BaseModel):
    is_open: bool


class VotingScheduleRequest(BaseModel):
    minutes: Optional[int] = Field(None, gt=0)
    close_time: Optional[datetime] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "llm_provider": settings.llm.provider,
        "realtime_configured": bool(settings.realtime.api_key),
        "active_sessions": len(active_sessions),
    }


# ══════════════════════════════════════════════════════════════
#  REALTIME CREDENTIALS
# ══════════════════════════════════════════════════════════════

@app.post("/api/realtime/session")
async def create_realtime_session(req: RealtimeSessionRequest):
    """Mint a short-lived realtime token. The long-lived key never leaves the server."""
    try:
        token = await mint_ephemeral_token(req.instructions, get_settings().realtime)
    except CredentialError as e:
        return JSONResponse(status_code=e.status_code or 500, content={"error": str(e)})
    return {"ephemeral_token": token}


# ══════════════════════════════════════════════════════════════
#  PRACTICE
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/practice/profile")
async def generate_profile(settings: PracticeSettings):
    try:
        profile = await coach_engine.generate_customer_profile(settings)
    except CoachEngineError as e:
        raise HTTPException(status_code=502, detail=f"Profile generation failed: {e}")
    return profile.model_dump(mode="json", by_alias=True)


@app.post("/api/v1/practice/avatar-response")
async def avatar_response(req: AvatarResponseRequest):
    """
    Stream the simulated customer's reply as plain text chunks.

    The first chunk is pulled before the response starts, so a provider
    that fails up front gives a 502. A failure after that aborts the
    connection instead of ending the body cleanly.
    """
    chunks = coach_engine.stream_avatar_response(
        req.settings, req.profile, [t.model_dump() for t in req.history], req.turn_number,
    )
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = ""
    except CoachEngineError as e:
        raise HTTPException(status_code=502, detail=f"Avatar response failed: {e}")

    async def body():
        if first:
            yield first
        try:
            async for chunk in chunks:
                yield chunk
        except CoachEngineError as e:
            logger.error("avatar_stream_aborted", error=str(e))
            raise

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


@app.post("/api/v1/practice/evaluate")
async def evaluate(req: EvaluateRequest):
    try:
        evaluation = await coach_engine.evaluate_pitch(
            req.product, req.profile, [t.model_dump() for t in req.conversation],
        )
    except SchemaViolationError as e:
        raise HTTPException(status_code=502, detail=f"Evaluation did not match the rubric: {e}")
    except CoachEngineError as e:
        raise HTTPException(status_code=502, detail=f"Evaluation failed: {e}")
    return evaluation.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════
#  COMPETITION
# ══════════════════════════════════════════════════════════════

def _vote_error(e: Exception) -> HTTPException:
    if isinstance(e, VotingClosedError):
        return HTTPException(status_code=409, detail="Voting is closed")
    return HTTPException(status_code=422, detail=str(e))


@app.post("/api/v1/competition/ratings")
async def submit_rating(req: RatingRequest):
    try:
        rating = await competition_store.upsert_rating(req.user_id, req.group_number, req.stars)
    except (VotingClosedError, UnknownGroupError, ValidationError) as e:
        raise _vote_error(e)
    return rating.model_dump(mode="json")


@app.get("/api/v1/competition/ratings")
async def list_ratings(group_number: Optional[int] = Query(None, ge=1)):
    ratings = await competition_store.list_ratings(group_number)
    return [r.model_dump(mode="json") for r in ratings]


@app.post("/api/v1/competition/words")
async def submit_word(req: WordRequest):
    try:
        entry = await competition_store.submit_word(req.user_id, req.group_number, req.word)
    except (VotingClosedError, UnknownGroupError, ValidationError) as e:
        raise _vote_error(e)
    return entry.model_dump(mode="json")


@app.get("/api/v1/competition/summary")
async def competition_summary():
    config = competition_store.config
    summary = aggregate(
        await competition_store.list_ratings(),
        await competition_store.list_words(),
        groups=config.groups,
        top_n=config.top_words,
    )
    return summary.model_dump(mode="json")


@app.get("/api/v1/competition/wordcloud")
async def word_cloud(group_number: Optional[int] = Query(None, ge=1)):
    words = await competition_store.list_words()
    return word_cloud_data(words, group_number, limit=competition_store.config.word_cloud_limit)


@app.get("/api/v1/competition/voting")
async def get_voting():
    config = await competition_store.get_voting_config()
    return {**config.model_dump(mode="json"), "accepts_votes": config.accepts_votes()}


@app.put("/api/v1/competition/voting")
async def set_voting(req: VotingToggleRequest):
    config = await competition_store.set_voting_open(req.is_open)
    return {**config.model_dump(mode="json"), "accepts_votes": config.accepts_votes()}


@app.post("/api/v1/competition/voting/schedule")
async def schedule_voting_close(req: VotingScheduleRequest):
    try:
        config = await competition_store.schedule_close(req.minutes, req.close_time)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {**config.model_dump(mode="json"), "accepts_votes": config.accepts_votes()}


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET — Text-mode practice session
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws/practice")
async def websocket_practice(websocket: WebSocket):
    """
    One practice session per connection, driven by the orchestrator.

    Client sends JSON events:
      {"type": "start", "settings": {"product": "...", "mode": "...", ...}}
      {"type": "message", "content": "Buenas tardes, le presento..."}
      {"type": "restart"}

    Server pushes {"type": "state", ...snapshot} after every change and
    {"type": "error", "detail": "..."} for rejected events.
    """
    await websocket.accept()

    orchestrator = PracticeOrchestrator(coach_engine)
    active_sessions.add(orchestrator)
    outbox: asyncio.Queue = asyncio.Queue()
    orchestrator.subscribe(lambda snapshot: outbox.put_nowait({"type": "state", **snapshot}))

    async def pump():
        while True:
            await websocket.send_json(await outbox.get())

    sender = asyncio.create_task(pump())
    outbox.put_nowait({"type": "state", **orchestrator.snapshot()})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                event = {"type": "message", "content": raw}
            await _handle_practice_event(orchestrator, event, outbox)

    except WebSocketDisconnect:
        logger.info("practice_socket_closed")
    except Exception as e:
        logger.error("practice_socket_error", error=str(e))
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        await orchestrator.shutdown()
        active_sessions.discard(orchestrator)


async def _handle_practice_event(orchestrator: PracticeOrchestrator, event: dict[str, Any],
                                 outbox: asyncio.Queue) -> None:
    event_type = event.get("type")

    if event_type == "start":
        try:
            settings = PracticeSettings.model_validate(event.get("settings") or {})
        except ValidationError as e:
            outbox.put_nowait({"type": "error", "detail": json.loads(e.json(include_url=False))})
            return
        if settings.interaction == InteractionMode.VOICE:
            # Voice runs in the client against the realtime API, not over this socket
            settings = settings.model_copy(update={"interaction": InteractionMode.TEXT})
        if not await orchestrator.start(settings):
            outbox.put_nowait({"type": "error", "detail": "A session is already running"})

    elif event_type == "message":
        if not await orchestrator.submit_user_message(event.get("content", "")):
            outbox.put_nowait({"type": "error", "detail": "Message not accepted right now"})

    elif event_type == "restart":
        await orchestrator.restart()

    else:
        outbox.put_nowait({"type": "error", "detail": f"Unknown event type: {event_type}"})


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
