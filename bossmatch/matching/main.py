"""
AI Match service — FastAPI app.
Runs on port 5010.

Start with:
    uvicorn bossmatch.matching.main:app --port 5010 --reload

The caller is identified by the `session_user_id` cookie set at login.
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Cookie, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from prometheus_client import make_asgi_app

from bossmatch import config
from bossmatch.db import Database
from bossmatch.matching.orchestrator import ConversationStateError, TurnFailedError
from bossmatch.matching.service import (
    ConversationNotFound,
    ConversationNotReady,
    CredentialUnavailable,
    JobNotFound,
    MatchService,
    PermissionDenied,
    ProfileMissing,
)
from bossmatch.secondme import ChatError, SecondMeClient

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database(config.DATABASE_URL, echo=config.DB_ECHO)
    chat = SecondMeClient()
    app.state.service = MatchService(database, chat)
    logger.info('AI match service started')
    yield
    chat.close()
    database.dispose()


app = FastAPI(title='AI Match', version='0.1.0', lifespan=lifespan)
app.mount('/metrics', make_asgi_app())


# --- Dependencies ---

def get_service(request: Request) -> MatchService:
    return request.app.state.service


def current_user_id(session_user_id: str | None = Cookie(default=None)) -> str:
    if not session_user_id:
        raise HTTPException(status_code=401, detail='Not logged in')
    return session_user_id


# --- Request / Response models ---

class CreateConversationRequest(BaseModel):
    job_id: str


class ConversationState(BaseModel):
    conversation_id: str
    status: str
    current_turn: int


class TurnResponse(BaseModel):
    success: bool = True
    turn: int
    candidate_message: str
    employer_message: str
    is_completed: bool
    total_history: int


class EvaluateResponse(BaseModel):
    success: bool = True
    score: int
    reason: str
    strengths: list[str]
    weaknesses: list[str]
    is_matched: bool


class JobRecommendation(BaseModel):
    job_id: str
    title: str
    company_name: str | None
    city: str | None
    match_score: int | None
    reason: str | None = None
    source: str
    conversation_id: str | None = None


class CandidateRecommendation(BaseModel):
    user_id: str
    name: str | None
    title: str | None
    city: str | None
    match_score: int


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, CredentialUnavailable):
        return HTTPException(status_code=401, detail={
            'error': 'SecondMe authorization required',
            'party': e.party,
        })
    if isinstance(e, (ConversationNotFound, JobNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (PermissionDenied, ProfileMissing)):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ConversationNotReady):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConversationStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (TurnFailedError, ChatError)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=f'AI match failed: {e}')


_HANDLED = (
    CredentialUnavailable, ConversationNotFound, JobNotFound, PermissionDenied,
    ProfileMissing, ConversationNotReady, ConversationStateError, TurnFailedError, ChatError,
)


# --- Routes ---

@app.get('/health')
def health():
    return {'status': 'ok', 'service': 'ai-match'}


@app.post('/conversations', response_model=ConversationState)
def create_conversation(req: CreateConversationRequest,
                        user_id: str = Depends(current_user_id),
                        service: MatchService = Depends(get_service)):
    """Create (or return the existing) AI conversation between the caller and a job."""
    try:
        return service.create_conversation(user_id, req.job_id)
    except _HANDLED as e:
        raise _http_error(e)


@app.get('/conversations/{conversation_id}/auto')
def auto_match(conversation_id: str,
               user_id: str = Depends(current_user_id),
               service: MatchService = Depends(get_service)):
    """
    Server-sent events: replay, live turns, then the score.

    Each frame is `data: <json>` with type message / progress / score / error.
    """
    def event_stream():
        for event in service.start_or_resume_conversation(conversation_id, user_id):
            yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'},
    )


@app.post('/conversations/{conversation_id}/turn', response_model=TurnResponse)
def run_turns(conversation_id: str,
              user_id: str = Depends(current_user_id),
              service: MatchService = Depends(get_service)):
    """
    Play out the remaining turns without streaming.

    - 400: conversation already completed
    - 401: a party needs to re-authorize with SecondMe
    - 502: a chat call failed; the conversation is marked failed and can be retried
    """
    try:
        return service.run_turns(conversation_id, user_id)
    except _HANDLED as e:
        raise _http_error(e)


@app.post('/conversations/{conversation_id}/evaluate', response_model=EvaluateResponse)
def evaluate(conversation_id: str,
             user_id: str = Depends(current_user_id),
             service: MatchService = Depends(get_service)):
    try:
        outcome = service.evaluate_conversation(conversation_id, user_id)
    except _HANDLED as e:
        raise _http_error(e)
    return EvaluateResponse(**outcome.model_dump())


@app.post('/conversations/{conversation_id}/reset')
def reset(conversation_id: str,
          user_id: str = Depends(current_user_id),
          service: MatchService = Depends(get_service)):
    try:
        service.reset_conversation(conversation_id, user_id)
    except _HANDLED as e:
        raise _http_error(e)
    return {'success': True}


@app.get('/jobs/recommend', response_model=list[JobRecommendation])
def recommend_jobs(mode: Literal['heuristic', 'ai'] = 'heuristic',
                   user_id: str = Depends(current_user_id),
                   service: MatchService = Depends(get_service)):
    try:
        return service.get_job_recommendations(user_id, mode=mode)
    except _HANDLED as e:
        raise _http_error(e)


@app.get('/jobs/{job_id}/candidates', response_model=list[CandidateRecommendation])
def recommend_candidates(job_id: str,
                         user_id: str = Depends(current_user_id),
                         service: MatchService = Depends(get_service)):
    try:
        return service.get_candidate_recommendations(job_id, user_id)
    except _HANDLED as e:
        raise _http_error(e)
