"""
AI match core logic. Framework-agnostic.

Each public method opens its own session on the injected Database, so one
service instance can serve many conversations; the caller must not advance the
same conversation from two places at once.
"""
import logging
from typing import Iterator

from bossmatch import config
from bossmatch.auth import get_valid_access_token
from bossmatch.db import Conversation, Job
from bossmatch.metrics import conversations_completed, conversations_failed, heuristic_scores
from bossmatch.matching.evaluation import EvaluationOutcome, run_evaluation
from bossmatch.matching.heuristic import (
    calculate_match_score,
    sort_candidates_by_match_score,
    sort_jobs_by_match_score,
)
from bossmatch.matching.orchestrator import (
    CANDIDATE,
    EMPLOYER,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    ConversationEvent,
    ConversationOrchestrator,
    ConversationRun,
    ConversationStateError,
    Party,
    TurnFailedError,
)
from bossmatch.matching.prompts import build_candidate_persona_prompt, build_employer_persona_prompt
from bossmatch.matching.schemas import CandidateSummary, CompanySummary, JobSummary
from bossmatch.secondme import ChatError
from bossmatch.store import ConversationStore

logger = logging.getLogger(__name__)


class ConversationNotFound(Exception):
    pass


class JobNotFound(Exception):
    pass


class PermissionDenied(Exception):
    pass


class ProfileMissing(Exception):
    pass


class ConversationNotReady(Exception):
    pass


class CredentialUnavailable(Exception):
    def __init__(self, party: str):
        super().__init__(f"No valid SecondMe access token for the {party}")
        self.party = party


def _company_summary(job: Job) -> CompanySummary:
    if job.company is None:
        return CompanySummary()
    return CompanySummary.model_validate(job.company)


def _conversation_state(conversation: Conversation) -> dict:
    return {
        'conversation_id': conversation.id,
        'status': conversation.status,
        'current_turn': conversation.current_turn,
    }


class MatchService:
    def __init__(self, database, chat, credentials=get_valid_access_token,
                 max_turns: int = config.AI_MATCH_CONVERSATION_TURNS,
                 match_threshold: int = config.AI_MATCH_THRESHOLD,
                 max_jobs: int = config.AI_MATCH_MAX_JOBS):
        self.database = database
        self.chat = chat
        self.credentials = credentials
        self.max_turns = max_turns
        self.match_threshold = match_threshold
        self.max_jobs = max_jobs
        self.orchestrator = ConversationOrchestrator(chat)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _load(self, store: ConversationStore, conversation_id: str, user_id: str,
              allow_employer: bool = True) -> Conversation:
        conversation = store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")

        is_candidate = conversation.user_id == user_id
        is_employer = allow_employer and conversation.job.employer_user_id == user_id
        if not (is_candidate or is_employer):
            raise PermissionDenied(f"User {user_id} may not access conversation {conversation_id}")
        return conversation

    def _summaries(self, store: ConversationStore, candidate_id: str, job: Job):
        profile = store.get_candidate_profile(candidate_id)
        if profile is None:
            raise ProfileMissing(f"Candidate {candidate_id} has no profile")
        return (
            CandidateSummary.model_validate(profile),
            JobSummary.model_validate(job),
            _company_summary(job),
        )

    def _credential(self, store: ConversationStore, user_id: str, party: str) -> str:
        token = self.credentials(store.session, user_id)
        if not token:
            raise CredentialUnavailable(party)
        return token

    def _parties(self, store: ConversationStore, conversation: Conversation,
                 candidate: CandidateSummary, job: JobSummary, company: CompanySummary):
        candidate_token = self._credential(store, conversation.user_id, CANDIDATE)
        employer_token = self._credential(store, conversation.job.employer_user_id, EMPLOYER)
        return (
            Party(credential=candidate_token,
                  persona=build_candidate_persona_prompt(candidate, job.title, company.name)),
            Party(credential=employer_token,
                  persona=build_employer_persona_prompt(job, company)),
        )

    def _run_for(self, conversation: Conversation) -> ConversationRun:
        return ConversationRun(
            conversation.conversation_history or [],
            max_turns=self.max_turns,
            candidate_session=conversation.candidate_session_id,
            employer_session=conversation.employer_session_id,
        )

    def _persist_turn(self, store: ConversationStore, conversation_id: str):
        def on_turn(run: ConversationRun, turn) -> None:
            store.update_conversation(
                conversation_id,
                conversation_history=run.history_dicts(),
                current_turn=run.current_turn,
                candidate_session_id=run.candidate_session,
                employer_session_id=run.employer_session,
                status=run.status,
            )
            if run.is_complete:
                conversations_completed.inc()
        return on_turn

    def _mark_failed(self, store: ConversationStore, conversation_id: str, reason: str) -> None:
        store.update_conversation(conversation_id, status=STATUS_FAILED)
        conversations_failed.labels(reason=reason).inc()
        logger.warning(f"Conversation {conversation_id} marked failed ({reason})")

    def _sync_status(self, store: ConversationStore, conversation: Conversation,
                     run: ConversationRun) -> None:
        # Completed once every turn exists; otherwise a failed run is retried from where it stopped
        if conversation.status != run.status:
            store.update_conversation(conversation.id, status=run.status)

    # ── Use cases ────────────────────────────────────────────────────────────

    def create_conversation(self, candidate_id: str, job_id: str) -> dict:
        """Return the conversation for (candidate, job), creating it on first contact."""
        with self.database.session() as session:
            store = ConversationStore(session)
            if store.get_candidate_profile(candidate_id) is None:
                raise ProfileMissing(f"Candidate {candidate_id} has no profile")
            if store.get_job(job_id) is None:
                raise JobNotFound(f"Job {job_id} not found")

            conversation = store.create_conversation(candidate_id, job_id, self.match_threshold)
            return _conversation_state(conversation)

    def run_turns(self, conversation_id: str, user_id: str) -> dict:
        """Blocking: play out every remaining turn. Does not evaluate."""
        with self.database.session() as session:
            store = ConversationStore(session)
            conversation = self._load(store, conversation_id, user_id, allow_employer=False)
            if conversation.status == STATUS_COMPLETED or conversation.current_turn >= self.max_turns:
                raise ConversationNotReady(f"Conversation already completed {self.max_turns} turns")

            candidate, job, company = self._summaries(store, conversation.user_id, conversation.job)
            candidate_party, employer_party = self._parties(store, conversation, candidate, job, company)

            try:
                run = self._run_for(conversation)
            except ConversationStateError:
                self._mark_failed(store, conversation_id, 'state')
                raise

            previous = run.current_turn
            self._sync_status(store, conversation, run)
            try:
                self.orchestrator.advance(
                    run, candidate_party, employer_party,
                    on_turn=self._persist_turn(store, conversation_id),
                )
            except TurnFailedError:
                self._mark_failed(store, conversation_id, 'chat')
                raise

            new_turns = run.history[previous:]
            return {
                'turn': run.current_turn,
                'candidate_message': next((t.content for t in new_turns if t.role == CANDIDATE), ''),
                'employer_message': next((t.content for t in new_turns if t.role == EMPLOYER), ''),
                'is_completed': run.is_complete,
                'total_history': len(run.history),
            }

    def start_or_resume_conversation(self, conversation_id: str, user_id: str) -> Iterator[dict]:
        """
        Streamed auto-match: replays stored turns, plays the rest live, evaluates.

        Yields wire events: message / progress / score / error. Problems are
        reported as an `error` event rather than raised, since the response
        has usually started streaming already.
        """
        with self.database.session() as session:
            store = ConversationStore(session)
            try:
                conversation = self._load(store, conversation_id, user_id)

                if conversation.status == STATUS_COMPLETED and conversation.match_score is not None:
                    yield {'type': 'message',
                           'message': {'turn': 0, 'role': 'system', 'content': '对话已完成'}}
                    yield ConversationEvent(type='score', score=conversation.match_score).to_wire()
                    return

                candidate, job, company = self._summaries(store, conversation.user_id, conversation.job)
                candidate_party, employer_party = self._parties(store, conversation, candidate, job, company)
            except (ConversationNotFound, PermissionDenied, ProfileMissing, CredentialUnavailable) as e:
                yield ConversationEvent(type='error', error=str(e)).to_wire()
                return

            try:
                run = self._run_for(conversation)
            except ConversationStateError as e:
                self._mark_failed(store, conversation_id, 'state')
                yield ConversationEvent(type='error', error=str(e)).to_wire()
                return

            for turn in run.history:
                yield ConversationEvent(type='message', turn=turn).to_wire()
                progress = turn.turn * 100 / run.max_turns
                yield ConversationEvent(type='progress', progress=progress).to_wire()

            try:
                self._sync_status(store, conversation, run)
                if not run.is_complete:
                    events = self.orchestrator.iter_advance(
                        run, candidate_party, employer_party,
                        on_turn=self._persist_turn(store, conversation_id),
                    )
                    for event in events:
                        yield event.to_wire()

                if conversation.match_score is None:
                    outcome = run_evaluation(
                        self.chat, store, conversation, candidate, job, company,
                        credential=candidate_party.credential,
                    )
                    score = outcome.score
                else:
                    score = conversation.match_score
            except TurnFailedError as e:
                self._mark_failed(store, conversation_id, 'chat')
                yield ConversationEvent(type='error', error=str(e)).to_wire()
                return
            except ChatError as e:
                # Transcript is complete; evaluation can be retried on its own
                logger.error(f"Evaluation failed for conversation {conversation_id}: {e}")
                yield ConversationEvent(type='error', error=f"评估失败: {e}").to_wire()
                return
            except Exception as e:
                logger.exception(f"Auto match failed for conversation {conversation_id}")
                self._mark_failed(store, conversation_id, 'error')
                yield ConversationEvent(type='error', error=str(e) or '自动匹配失败').to_wire()
                return

            yield ConversationEvent(type='score', score=score).to_wire()

    def evaluate_conversation(self, conversation_id: str, user_id: str) -> EvaluationOutcome:
        with self.database.session() as session:
            store = ConversationStore(session)
            conversation = self._load(store, conversation_id, user_id, allow_employer=False)

            if conversation.status != STATUS_COMPLETED:
                raise ConversationNotReady(
                    f"Conversation not finished, current turn: {conversation.current_turn}"
                )

            # Already scored: report the stored result instead of asking again
            if conversation.match_score is not None:
                return EvaluationOutcome(
                    score=conversation.match_score,
                    reason=conversation.evaluation_reason or '',
                    is_matched=conversation.match_score >= conversation.match_threshold,
                )

            candidate, job, company = self._summaries(store, conversation.user_id, conversation.job)
            credential = self._credential(store, conversation.user_id, CANDIDATE)
            return run_evaluation(self.chat, store, conversation, candidate, job, company, credential)

    def reset_conversation(self, conversation_id: str, user_id: str) -> None:
        with self.database.session() as session:
            store = ConversationStore(session)
            conversation = self._load(store, conversation_id, user_id)
            store.update_conversation(
                conversation.id,
                status=STATUS_PENDING,
                current_turn=0,
                conversation_history=[],
                match_score=None,
                evaluation_reason=None,
                candidate_session_id=None,
                employer_session_id=None,
            )
            logger.info(f"Conversation {conversation_id} reset by {user_id}")

    # ── Recommendations ──────────────────────────────────────────────────────

    def get_job_recommendations(self, candidate_id: str, mode: str = 'heuristic') -> list[dict]:
        """
        Rank open jobs for a candidate.

          heuristic  every open job, scored by calculate_match_score
          ai         up to max_jobs open jobs, interviewed and evaluated; only
                     jobs at or above the threshold are returned
        """
        with self.database.session() as session:
            store = ConversationStore(session)
            profile = store.get_candidate_profile(candidate_id)
            if profile is None:
                raise ProfileMissing(f"Candidate {candidate_id} has no profile")
            candidate = CandidateSummary.model_validate(profile)

            if mode == 'ai':
                results = [
                    self._process_job_match(store, candidate_id, candidate, job)
                    for job in store.list_open_jobs(limit=self.max_jobs)
                ]
                matched = [
                    r for r in results
                    if r['match_score'] is not None and r['match_score'] >= self.match_threshold
                ]
                return sort_jobs_by_match_score(matched)

            scored = []
            for job in store.list_open_jobs():
                score = calculate_match_score(candidate, JobSummary.model_validate(job))
                heuristic_scores.labels(side='jobs').observe(score)
                scored.append(self._job_entry(job, score, source='heuristic'))
            return sort_jobs_by_match_score(scored)

    def get_candidate_recommendations(self, job_id: str, user_id: str) -> list[dict]:
        """Rank every candidate profile against one of the employer's jobs."""
        with self.database.session() as session:
            store = ConversationStore(session)
            job = store.get_job(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if job.employer_user_id != user_id:
                raise PermissionDenied(f"User {user_id} does not own job {job_id}")

            job_summary = JobSummary.model_validate(job)
            scored = []
            for profile in store.list_candidate_profiles():
                score = calculate_match_score(CandidateSummary.model_validate(profile), job_summary)
                heuristic_scores.labels(side='candidates').observe(score)
                scored.append({
                    'user_id': profile.user_id,
                    'name': profile.name,
                    'title': profile.title,
                    'city': profile.city,
                    'match_score': score,
                })
            return sort_candidates_by_match_score(scored)

    @staticmethod
    def _job_entry(job: Job, score: int | None, source: str, reason: str | None = None,
                   conversation_id: str | None = None) -> dict:
        return {
            'job_id': job.id,
            'title': job.title,
            'company_name': job.company.name if job.company else None,
            'city': job.city,
            'match_score': score,
            'reason': reason,
            'source': source,
            'conversation_id': conversation_id,
        }

    def _process_job_match(self, store: ConversationStore, candidate_id: str,
                           candidate: CandidateSummary, job: Job) -> dict:
        conversation = None
        try:
            conversation = store.create_conversation(candidate_id, job.id, self.match_threshold)

            if conversation.status == STATUS_COMPLETED and conversation.match_score is not None:
                return self._job_entry(job, conversation.match_score, 'ai',
                                       conversation.evaluation_reason, conversation.id)

            job_summary = JobSummary.model_validate(job)
            company = _company_summary(job)

            if conversation.status != STATUS_COMPLETED:
                run = self._run_for(conversation)
                if not run.is_complete:
                    candidate_party, employer_party = self._parties(
                        store, conversation, candidate, job_summary, company,
                    )
                self._sync_status(store, conversation, run)
                if not run.is_complete:
                    self.orchestrator.advance(
                        run, candidate_party, employer_party,
                        on_turn=self._persist_turn(store, conversation.id),
                    )

            credential = self._credential(store, candidate_id, CANDIDATE)
        except CredentialUnavailable as e:
            logger.warning(f"Skipping job {job.id}: {e}")
            return self._job_entry(job, None, 'ai',
                                   conversation_id=conversation.id if conversation else None)
        except (TurnFailedError, ConversationStateError) as e:
            logger.error(f"AI match failed for job {job.id}: {e}")
            if conversation is not None:
                self._mark_failed(store, conversation.id, 'chat')
            return self._job_entry(job, None, 'ai',
                                   conversation_id=conversation.id if conversation else None)

        try:
            outcome = run_evaluation(self.chat, store, conversation, candidate,
                                     job_summary, company, credential)
        except ChatError as e:
            # Transcript stays completed; the next run only retries the evaluation
            logger.error(f"Evaluation failed for job {job.id}: {e}")
            return self._job_entry(job, None, 'ai', conversation_id=conversation.id)

        return self._job_entry(job, outcome.score, 'ai', outcome.reason, conversation.id)
