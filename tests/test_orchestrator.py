import pytest

from bossmatch.matching.orchestrator import (
    OPENING_MESSAGE,
    ConversationOrchestrator,
    ConversationRun,
    ConversationStateError,
    Party,
    TurnFailedError,
)

CANDIDATE_PARTY = Party(credential='candidate-token', persona='你是候选人')
EMPLOYER_PARTY = Party(credential='employer-token', persona='你是 HR')


class Persisted:
    """Records what a store would hold after each on_turn callback."""

    def __init__(self):
        self.history = []
        self.status = 'pending'
        self.sessions = (None, None)

    def __call__(self, run, turn):
        self.history = run.history_dicts()
        self.status = run.status
        self.sessions = (run.candidate_session, run.employer_session)

    def resume(self, max_turns=5):
        return ConversationRun(self.history, max_turns=max_turns,
                               candidate_session=self.sessions[0],
                               employer_session=self.sessions[1])


def test_five_turn_run_alternates_roles(chat):
    run = ConversationOrchestrator(chat).advance(ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    assert [t.role for t in run.history] == ['candidate', 'employer', 'candidate', 'employer', 'candidate']
    assert [t.turn for t in run.history] == [1, 2, 3, 4, 5]
    assert run.status == 'completed'
    assert run.is_complete
    assert len(chat.calls) == 5


def test_each_party_receives_the_other_partys_message(chat):
    run = ConversationOrchestrator(chat).advance(ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    assert chat.calls[0]['message'] == OPENING_MESSAGE
    for index in range(1, 5):
        assert chat.calls[index]['message'] == run.history[index - 1].content
    assert [c['credential'] for c in chat.calls[:2]] == ['candidate-token', 'employer-token']


def test_persona_is_sent_once_per_session(chat):
    run = ConversationOrchestrator(chat).advance(ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    assert chat.calls[0]['session_handle'] is None
    assert chat.calls[0]['system_instruction'] == '你是候选人'
    assert chat.calls[1]['session_handle'] is None
    assert chat.calls[1]['system_instruction'] == '你是 HR'
    for call in chat.calls[2:]:
        assert call['system_instruction'] is None
        assert call['session_handle'] == f"{call['party']}-session"

    assert run.candidate_session == 'candidate-session'
    assert run.employer_session == 'employer-session'


def test_failure_on_turn_three_then_retry(make_chat):
    chat = make_chat(fail_on={3})
    orchestrator = ConversationOrchestrator(chat)
    persisted = Persisted()

    with pytest.raises(TurnFailedError) as exc:
        orchestrator.advance(ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY, on_turn=persisted)

    assert exc.value.turn == 3
    assert exc.value.role == 'candidate'
    assert len(persisted.history) == 2
    assert persisted.status == 'pending'
    first_two = list(persisted.history)

    run = orchestrator.advance(persisted.resume(), CANDIDATE_PARTY, EMPLOYER_PARTY, on_turn=persisted)

    assert run.status == 'completed'
    assert persisted.history[:2] == first_two
    assert [t['turn'] for t in persisted.history] == [1, 2, 3, 4, 5]
    # Retried turn 3 replies to turn 2 inside the existing candidate session
    retry = chat.calls[3]
    assert retry['message'] == first_two[1]['content']
    assert retry['session_handle'] == 'candidate-session'
    assert retry['system_instruction'] is None


def test_split_run_matches_single_run(make_chat):
    single_chat = make_chat()
    single = ConversationOrchestrator(single_chat).advance(
        ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    split_chat = make_chat()
    orchestrator = ConversationOrchestrator(split_chat)
    persisted = Persisted()
    orchestrator.advance(ConversationRun(max_turns=2), CANDIDATE_PARTY, EMPLOYER_PARTY, on_turn=persisted)
    resumed = orchestrator.advance(persisted.resume(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    assert resumed.history_dicts() == single.history_dicts()
    assert split_chat.calls == single_chat.calls


def test_advance_on_completed_run_makes_no_calls(chat):
    orchestrator = ConversationOrchestrator(chat)
    run = orchestrator.advance(ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)
    orchestrator.advance(run, CANDIDATE_PARTY, EMPLOYER_PARTY)
    assert len(chat.calls) == 5


def test_iter_advance_streams_drafts_then_final_turns(chat):
    run = ConversationRun()
    events = [e.to_wire() for e in ConversationOrchestrator(chat).iter_advance(
        run, CANDIDATE_PARTY, EMPLOYER_PARTY)]

    first_turn = [e for e in events if e['type'] == 'message' and e['message']['turn'] == 1]
    assert [e['message']['content'] for e in first_turn] == ['', 'cand', 'candidate reply 1', 'candidate reply 1']

    progress = [e['progress'] for e in events if e['type'] == 'progress']
    assert progress == [20.0, 40.0, 60.0, 80.0, 100.0]
    assert run.status == 'completed'


def test_iter_advance_matches_advance(make_chat):
    streamed = ConversationRun()
    list(ConversationOrchestrator(make_chat()).iter_advance(streamed, CANDIDATE_PARTY, EMPLOYER_PARTY))
    blocking = ConversationOrchestrator(make_chat()).advance(
        ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY)

    assert streamed.history_dicts() == blocking.history_dicts()


def test_iter_advance_failure_keeps_finished_turns(make_chat):
    persisted = Persisted()
    events = ConversationOrchestrator(make_chat(fail_on={2})).iter_advance(
        ConversationRun(), CANDIDATE_PARTY, EMPLOYER_PARTY, on_turn=persisted)

    with pytest.raises(TurnFailedError) as exc:
        list(events)

    assert exc.value.turn == 2
    assert exc.value.role == 'employer'
    assert [t['role'] for t in persisted.history] == ['candidate']


@pytest.mark.parametrize('history', [
    [{'turn': 1, 'role': 'employer', 'content': 'x'}],
    [{'turn': 1, 'role': 'candidate', 'content': 'x'}, {'turn': 3, 'role': 'employer', 'content': 'y'}],
    [{'turn': 1, 'role': 'candidate', 'content': 'x'}, {'turn': 2, 'role': 'candidate', 'content': 'y'}],
])
def test_corrupted_history_is_rejected(history):
    with pytest.raises(ConversationStateError):
        ConversationRun(history)


def test_history_longer_than_max_turns_is_rejected():
    history = [
        {'turn': 1, 'role': 'candidate', 'content': 'a'},
        {'turn': 2, 'role': 'employer', 'content': 'b'},
        {'turn': 3, 'role': 'candidate', 'content': 'c'},
    ]
    with pytest.raises(ConversationStateError):
        ConversationRun(history, max_turns=2)


def test_turn_state_follows_history():
    run = ConversationRun([{'turn': 1, 'role': 'candidate', 'content': 'a'}], max_turns=5)
    assert run.state.next_role == 'employer'
    assert run.state.turns_remaining == 4

    empty = ConversationRun()
    assert empty.state.next_role == 'candidate'
    assert empty.next_message() == OPENING_MESSAGE
    assert empty.next_session() is None


def test_append_out_of_order_is_rejected():
    run = ConversationRun()
    with pytest.raises(ConversationStateError):
        run.append('employer', 'too early', None)
