"""
Record store for conversations, matches, profiles and jobs.

Thin keyed CRUD over one SQLAlchemy session. Conversation creation and match
upsert are race-safe: the (user_id, job_id) unique constraints decide the
winner and the loser re-reads the row instead of failing.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bossmatch.db import CandidateProfile, Conversation, Job, Match, User

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, session: Session):
        self.session = session

    # Conversations

    def find_conversation(self, candidate_id: str, job_id: str) -> Conversation | None:
        return (
            self.session.query(Conversation)
            .filter_by(user_id=candidate_id, job_id=job_id)
            .first()
        )

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self.session.get(Conversation, conversation_id)

    def create_conversation(self, candidate_id: str, job_id: str,
                            match_threshold: int = 60) -> Conversation:
        """Create the pending conversation for a pair, or return the one that already exists."""
        existing = self.find_conversation(candidate_id, job_id)
        if existing:
            return existing

        conversation = Conversation(
            user_id=candidate_id,
            job_id=job_id,
            status='pending',
            current_turn=0,
            conversation_history=[],
            match_threshold=match_threshold,
        )
        try:
            self.session.add(conversation)
            self.session.commit()
        except IntegrityError:
            # Another request created it first
            self.session.rollback()
            logger.info(f"Conversation for {candidate_id}/{job_id} created concurrently, re-reading")
            existing = self.find_conversation(candidate_id, job_id)
            if existing is None:
                raise
            return existing

        logger.info(f"Created conversation {conversation.id} for {candidate_id}/{job_id}")
        return conversation

    def update_conversation(self, conversation_id: str, **fields) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation {conversation_id} not found")

        for key, value in fields.items():
            if not hasattr(Conversation, key):
                raise AttributeError(f"Conversation has no field {key!r}")
            setattr(conversation, key, value)

        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return conversation

    # Matches

    def get_match(self, candidate_id: str, job_id: str) -> Match | None:
        return self.session.query(Match).filter_by(user_id=candidate_id, job_id=job_id).first()

    def upsert_match(self, candidate_id: str, job_id: str, status: str,
                     unlocked: bool | None = None) -> Match:
        match = self.get_match(candidate_id, job_id)
        if match is None:
            match = Match(user_id=candidate_id, job_id=job_id, status=status,
                          unlocked=bool(unlocked))
            try:
                self.session.add(match)
                self.session.commit()
                return match
            except IntegrityError:
                self.session.rollback()
                match = self.get_match(candidate_id, job_id)
                if match is None:
                    raise

        match.status = status
        if unlocked is not None:
            match.unlocked = unlocked
        self.session.commit()
        return match

    # Profiles and jobs

    def get_user(self, user_id: str) -> User | None:
        return self.session.get(User, user_id)

    def get_candidate_profile(self, user_id: str) -> CandidateProfile | None:
        return self.session.query(CandidateProfile).filter_by(user_id=user_id).first()

    def list_candidate_profiles(self) -> list[CandidateProfile]:
        return self.session.query(CandidateProfile).all()

    def get_job(self, job_id: str) -> Job | None:
        return self.session.get(Job, job_id)

    def list_open_jobs(self, limit: int | None = None) -> list[Job]:
        query = (
            self.session.query(Job)
            .filter_by(status='open')
            .order_by(Job.created_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()
