from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from bossmatch.db import Database, User, CandidateProfile, Company, Job
from bossmatch.secondme import ChatError, ChatResult

TEST_DATABASE_URL = "sqlite:///:memory:"

EVALUATION_REPLY = (
    '评估如下：{"score": 82, "reason": "技能匹配度高", '
    '"strengths": ["React 经验"], "weaknesses": []}'
)


class FakeChat:
    """
    Scripted stand-in for SecondMeClient.

    Replies are `"<party> reply <n>"` where n counts every call made so far;
    calls listed in fail_on (1-based) raise ChatError instead. The evaluator
    gets the next entry of `evaluations`, or EVALUATION_REPLY once they run out.
    """

    def __init__(self, fail_on=(), evaluations=None):
        self.calls = []
        self.fail_on = set(fail_on)
        self.evaluations = list(evaluations or [])

    def _reply(self, credential, message, session_handle, system_instruction, party):
        self.calls.append({
            'credential': credential,
            'message': message,
            'session_handle': session_handle,
            'system_instruction': system_instruction,
            'party': party,
        })
        n = len(self.calls)
        if n in self.fail_on:
            raise ChatError(f"scripted failure on call {n}")
        if party == 'evaluator':
            text = self.evaluations.pop(0) if self.evaluations else EVALUATION_REPLY
            return ChatResult(ok=True, text=text, session_handle='evaluator-session')
        return ChatResult(ok=True, text=f"{party} reply {n}",
                          session_handle=session_handle or f"{party}-session")

    def stream_message(self, credential, message, session_handle=None,
                       system_instruction=None, party='unknown'):
        result = self._reply(credential, message, session_handle, system_instruction, party)
        yield result.text[:4]
        yield result.text[4:]
        return result

    def send_message_stream(self, credential, message, session_handle=None,
                            system_instruction=None, on_chunk=None, party='unknown'):
        try:
            result = self._reply(credential, message, session_handle, system_instruction, party)
        except ChatError as e:
            return ChatResult(ok=False, session_handle=session_handle, error_message=str(e))
        if on_chunk:
            on_chunk(result.text)
        return result

    def send_message(self, credential, message, session_handle=None,
                     system_instruction=None, party='unknown'):
        return self.send_message_stream(credential, message, session_handle,
                                        system_instruction, party=party)

    def parties(self):
        return [c['party'] for c in self.calls]


@pytest.fixture
def database():
    db = Database(TEST_DATABASE_URL)
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture
def test_db(database):
    session = database.SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def make_chat():
    return FakeChat


def _add(session, obj):
    session.add(obj)
    session.commit()
    return obj


@pytest.fixture
def make_user(test_db):
    def _make(name='用户', role='candidate', access_token=None, expires_in=3600, **fields):
        user = User(
            name=name,
            role=role,
            access_token=access_token or f"token-{name}",
            refresh_token=f"refresh-{name}",
            token_expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
            **fields,
        )
        return _add(test_db, user)
    return _make


@pytest.fixture
def make_profile(test_db):
    def _make(user, **fields):
        defaults = {
            'name': user.name,
            'title': 'Frontend Engineer',
            'city': 'Hangzhou',
            'years_exp': 3,
            'skills': 'React,TypeScript',
            'bio': '五年前端经验',
        }
        defaults.update(fields)
        return _add(test_db, CandidateProfile(user_id=user.id, **defaults))
    return _make


@pytest.fixture
def make_job(test_db):
    def _make(employer, company=None, **fields):
        defaults = {
            'title': 'Frontend Engineer',
            'description': 'React + TypeScript 前端开发',
            'city': 'Hangzhou',
            'salary_min': 20000,
            'salary_max': 35000,
            'salary_currency': 'CNY',
            'tags': 'React,3年',
            'status': 'open',
        }
        defaults.update(fields)
        return _add(test_db, Job(
            employer_user_id=employer.id,
            company_id=company.id if company else None,
            **defaults,
        ))
    return _make


@pytest.fixture
def pair(test_db, make_user, make_profile, make_job):
    """A candidate with a profile, an employer with a company and one open job."""
    candidate = make_user('小王', role='candidate')
    profile = make_profile(candidate)
    employer = make_user('李HR', role='employer')
    company = _add(test_db, Company(name='星云科技', city='杭州', intro='做开发者工具'))
    job = make_job(employer, company)
    return SimpleNamespace(
        candidate=candidate, profile=profile, employer=employer, company=company, job=job,
    )


@pytest.fixture
def tokens(pair):
    """Credential lookup injected into MatchService in place of the OAuth refresh."""
    table = {
        pair.candidate.id: 'candidate-token',
        pair.employer.id: 'employer-token',
    }

    def lookup(session, user_id):
        return table.get(user_id)

    lookup.table = table
    return lookup
