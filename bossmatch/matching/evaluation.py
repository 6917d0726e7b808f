"""
Evaluation pipeline: transcript → evaluator prompt → score → persisted result.

The evaluator is asked for JSON only, but replies are free text; parse_evaluation
pulls the first {...} block out and validates it. Anything unparseable becomes a
neutral 50 so a finished conversation always ends up with a score.
"""
import json
import logging
import re

from pydantic import BaseModel, Field, ValidationError, field_validator

from bossmatch.db import Conversation
from bossmatch.metrics import (
    evaluation_scores,
    evaluation_parse_failures,
    matches_unlocked,
)
from bossmatch.matching.prompts import build_evaluation_prompt
from bossmatch.matching.schemas import CandidateSummary, JobSummary, CompanySummary
from bossmatch.secondme import ChatError
from bossmatch.store import ConversationStore

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r'\{[\s\S]*\}')

MATCH_STATUS_LIKED = 'liked'


class EvaluationResult(BaseModel):
    score: int = Field(ge=0, le=100)
    reason: str = ''
    strengths: list[str] = []
    weaknesses: list[str] = []

    @field_validator('score', mode='before')
    @classmethod
    def _clamp_score(cls, value):
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return max(0, min(100, round(value)))
        return value

    @field_validator('strengths', 'weaknesses', mode='before')
    @classmethod
    def _listify(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return value


class EvaluationOutcome(BaseModel):
    score: int
    reason: str
    strengths: list[str] = []
    weaknesses: list[str] = []
    is_matched: bool


def degraded_result() -> EvaluationResult:
    return EvaluationResult(score=50, reason='评估解析失败', strengths=[], weaknesses=[])


def parse_evaluation(text: str) -> EvaluationResult:
    """
    Extract and validate the evaluator's JSON. Never raises.

    Swap this out if the provider ever offers structured output.
    """
    match = _JSON_BLOCK_RE.search(text or '')
    if not match:
        evaluation_parse_failures.inc()
        logger.warning(f"No JSON block in evaluation response: {(text or '')[:200]}")
        return degraded_result()

    try:
        return EvaluationResult.model_validate(json.loads(match.group(0)))
    except (ValueError, ValidationError) as e:
        evaluation_parse_failures.inc()
        logger.warning(f"Failed to parse evaluation response: {e}\nRaw: {match.group(0)[:200]}")
        return degraded_result()


def evaluate_match_score(chat, credential: str, prompt: str) -> EvaluationResult:
    """
    Ask the evaluator for a score. A failed chat call raises ChatError;
    an unparseable answer does not.
    """
    result = chat.send_message(credential, prompt, party='evaluator')
    if not result.ok:
        raise ChatError(result.error_message or 'evaluation call failed')

    evaluation = parse_evaluation(result.text)
    evaluation_scores.observe(evaluation.score)
    return evaluation


def apply_evaluation(store: ConversationStore, conversation: Conversation,
                     evaluation: EvaluationResult) -> bool:
    """Persist score and reason; unlock the match when the score clears the threshold."""
    store.update_conversation(
        conversation.id,
        match_score=evaluation.score,
        evaluation_reason=evaluation.reason,
    )

    is_matched = evaluation.score >= conversation.match_threshold
    if is_matched:
        store.upsert_match(conversation.user_id, conversation.job_id,
                           status=MATCH_STATUS_LIKED, unlocked=True)
        matches_unlocked.inc()
        logger.info(
            f"Conversation {conversation.id} scored {evaluation.score} "
            f">= {conversation.match_threshold}, match unlocked"
        )
    else:
        logger.info(
            f"Conversation {conversation.id} scored {evaluation.score} "
            f"< {conversation.match_threshold}"
        )
    return is_matched


def run_evaluation(chat, store: ConversationStore, conversation: Conversation,
                   candidate: CandidateSummary, job: JobSummary, company: CompanySummary,
                   credential: str) -> EvaluationOutcome:
    prompt = build_evaluation_prompt(candidate, job, company, conversation.conversation_history or [])
    evaluation = evaluate_match_score(chat, credential, prompt)
    is_matched = apply_evaluation(store, conversation, evaluation)
    return EvaluationOutcome(**evaluation.model_dump(), is_matched=is_matched)
