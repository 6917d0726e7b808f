"""
Conversation orchestrator. Drives two chat sessions through alternating turns.

Turn 1 is always the candidate answering a fixed opener. After that each party
receives the other's last message verbatim. A party's persona prompt is sent
only on the first call of its session; afterwards the provider session carries it.

The run is resumable: build a ConversationRun from the persisted history and
session handles and call advance() again; it picks up at the next expected role
and never re-sends a finished turn. Framework-agnostic; persistence happens
through the on_turn callback.
"""
import logging
from typing import Callable, Iterator, Literal

from pydantic import BaseModel

from bossmatch.metrics import conversation_turns
from bossmatch.secondme import ChatError, ChatResult

logger = logging.getLogger(__name__)

CANDIDATE = 'candidate'
EMPLOYER = 'employer'
OPENING_MESSAGE = '你好，我对这个职位很感兴趣，想了解一下详情。'
DEFAULT_MAX_TURNS = 5

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'


class Turn(BaseModel):
    turn: int
    role: Literal['candidate', 'employer']
    content: str


class TurnState(BaseModel):
    next_role: Literal['candidate', 'employer']
    turns_remaining: int


class Party(BaseModel):
    """One side of the interview: who speaks and how its session is seeded."""
    credential: str
    persona: str


class ConversationEvent(BaseModel):
    type: Literal['message', 'progress', 'score', 'error']
    turn: Turn | None = None
    progress: float | None = None
    score: int | None = None
    error: str | None = None

    def to_wire(self) -> dict:
        if self.type == 'message':
            return {'type': 'message', 'message': self.turn.model_dump()}
        if self.type == 'progress':
            return {'type': 'progress', 'progress': self.progress}
        if self.type == 'score':
            return {'type': 'score', 'score': self.score}
        return {'type': 'error', 'message': self.error}


class ConversationStateError(Exception):
    """Persisted history is not a contiguous, alternating transcript."""


class TurnFailedError(Exception):
    def __init__(self, turn: int, role: str, message: str):
        super().__init__(f"Turn {turn} ({role}) failed: {message}")
        self.turn = turn
        self.role = role
        self.message = message


def _other(role: str) -> str:
    return EMPLOYER if role == CANDIDATE else CANDIDATE


def validate_history(history: list[Turn]) -> None:
    expected_role = CANDIDATE
    for index, entry in enumerate(history):
        if entry.turn != index + 1:
            raise ConversationStateError(
                f"Turn numbers must be contiguous from 1: position {index} holds turn {entry.turn}"
            )
        if entry.role != expected_role:
            raise ConversationStateError(
                f"Turn {entry.turn} should be {expected_role}, found {entry.role}"
            )
        expected_role = _other(expected_role)


class ConversationRun:
    """In-memory transcript plus the state needed to produce the next turn."""

    def __init__(self, history=None, max_turns: int = DEFAULT_MAX_TURNS,
                 candidate_session: str | None = None, employer_session: str | None = None):
        self.history = [Turn.model_validate(t) for t in (history or [])]
        validate_history(self.history)
        if len(self.history) > max_turns:
            raise ConversationStateError(
                f"History holds {len(self.history)} turns, more than max_turns={max_turns}"
            )

        self.max_turns = max_turns
        self.sessions = {CANDIDATE: candidate_session or None, EMPLOYER: employer_session or None}
        last_role = self.history[-1].role if self.history else EMPLOYER
        self.state = TurnState(
            next_role=_other(last_role),
            turns_remaining=max_turns - len(self.history),
        )

    @property
    def current_turn(self) -> int:
        return len(self.history)

    @property
    def is_complete(self) -> bool:
        return self.state.turns_remaining == 0

    @property
    def status(self) -> str:
        return STATUS_COMPLETED if self.is_complete else STATUS_PENDING

    @property
    def candidate_session(self) -> str | None:
        return self.sessions[CANDIDATE]

    @property
    def employer_session(self) -> str | None:
        return self.sessions[EMPLOYER]

    @property
    def progress(self) -> float:
        return self.current_turn * 100 / self.max_turns

    def next_message(self) -> str:
        """What the next speaker is replying to."""
        if not self.history:
            return OPENING_MESSAGE
        return self.history[-1].content

    def next_session(self) -> str | None:
        # Turn 1 always opens a fresh candidate session
        if not self.history:
            return None
        return self.sessions[self.state.next_role]

    def append(self, role: str, content: str, session_handle: str | None) -> Turn:
        if self.is_complete:
            raise ConversationStateError(f"Conversation already has {self.max_turns} turns")
        if role != self.state.next_role:
            raise ConversationStateError(f"Expected {self.state.next_role} to speak, got {role}")

        turn = Turn(turn=self.current_turn + 1, role=role, content=content)
        self.history.append(turn)
        if session_handle:
            self.sessions[role] = session_handle
        self.state = TurnState(
            next_role=_other(role),
            turns_remaining=self.state.turns_remaining - 1,
        )
        return turn

    def history_dicts(self) -> list[dict]:
        return [t.model_dump() for t in self.history]


class ConversationOrchestrator:
    def __init__(self, chat):
        self.chat = chat

    def _request(self, run: ConversationRun, candidate: Party, employer: Party):
        role = run.state.next_role
        party = candidate if role == CANDIDATE else employer
        session = run.next_session()
        persona = party.persona if session is None else None
        return role, party, run.next_message(), session, persona

    def _record(self, run: ConversationRun, role: str, result: ChatResult,
                on_turn: Callable | None) -> Turn:
        turn = run.append(role, result.text, result.session_handle)
        conversation_turns.labels(role=role).inc()
        logger.info(f"Turn {turn.turn}/{run.max_turns} ({role}): {len(turn.content)} chars")
        if on_turn:
            on_turn(run, turn)
        return turn

    def advance(self, run: ConversationRun, candidate: Party, employer: Party,
                on_turn: Callable[[ConversationRun, Turn], None] | None = None) -> ConversationRun:
        """
        Produce turns until run.max_turns, using the blocking chat convention.

        Raises TurnFailedError on the first failed call; turns appended before the
        failure stay in run.history (and have already been passed to on_turn).
        """
        while not run.is_complete:
            role, party, message, session, persona = self._request(run, candidate, employer)
            next_turn = run.current_turn + 1

            result = self.chat.send_message(
                party.credential, message, session_handle=session,
                system_instruction=persona, party=role,
            )
            if not result.ok:
                raise TurnFailedError(next_turn, role, result.error_message or 'chat failed')

            self._record(run, role, result, on_turn)

        return run

    def iter_advance(self, run: ConversationRun, candidate: Party, employer: Party,
                     on_turn: Callable[[ConversationRun, Turn], None] | None = None
                     ) -> Iterator[ConversationEvent]:
        """
        Streaming variant of advance().

        Yields a `message` event with an empty draft when a turn starts, one per
        received fragment with the content so far, one with the final text once
        the call completes, then a `progress` event. The text returned by the
        provider is authoritative over the accumulated fragments.
        """
        while not run.is_complete:
            role, party, message, session, persona = self._request(run, candidate, employer)
            draft = Turn(turn=run.current_turn + 1, role=role, content='')
            yield ConversationEvent(type='message', turn=draft.model_copy())

            stream = self.chat.stream_message(
                party.credential, message, session_handle=session,
                system_instruction=persona, party=role,
            )
            try:
                while True:
                    try:
                        fragment = next(stream)
                    except StopIteration as done:
                        result = done.value
                        break
                    draft.content += fragment
                    yield ConversationEvent(type='message', turn=draft.model_copy())
            except ChatError as e:
                raise TurnFailedError(draft.turn, role, str(e)) from e

            turn = self._record(run, role, result, on_turn)
            yield ConversationEvent(type='message', turn=turn.model_copy())
            yield ConversationEvent(type='progress', progress=run.progress)
