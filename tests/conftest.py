import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6399/15"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ENABLE_MOCK_LOGIN"] = "true"
os.environ["CORRECTION_ENABLED"] = "true"
os.environ["LOG_LEVEL"] = "DEBUG"

from datetime import datetime, timedelta, timezone
import json

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nmc_prep.api import deps
from nmc_prep.core import auth as core_auth
from nmc_prep.core.cache import ProgressStore, RedisLatch, TokenDenylist, submit_key
from nmc_prep.core.database import get_db
from nmc_prep.main import app
from nmc_prep.models.orm import Base
from nmc_prep.services.auth_state import AuthService
from nmc_prep.services.explainer import SingleCorrection
from nmc_prep.services.identity import Identity
from nmc_prep.services.question_store import QuestionStore


class FakeRedis:
    """Just enough of the redis client for the cache helpers."""

    def __init__(self):
        self.data = {}
        self.ttl = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value if isinstance(value, str) else str(value)
        if ex is not None:
            self.ttl[key] = ex
        return True

    def delete(self, *keys):
        n = 0
        for k in keys:
            n += self.data.pop(k, None) is not None
            self.ttl.pop(k, None)
        return n

    def exists(self, key):
        return int(key in self.data)

    def lapse(self, key):
        """Drop a key as if its TTL ran out."""
        assert key in self.ttl, f"{key} has no TTL"
        self.delete(key)


class BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("redis is down")
        return fail


class Clock:
    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeJobs:
    def __init__(self):
        self.enqueued, self.cancelled, self.scheduled = [], [], []

    def enqueue_correction(self, session_id):
        self.enqueued.append(session_id); return f"job-{session_id}"

    def cancel_correction(self, session_id):
        self.cancelled.append(session_id); return True

    def schedule_expiry(self, session_id, at):
        self.scheduled.append((session_id, at)); return f"expire-{session_id}"


class FakeGenerator:
    """Scripted generator: correct_batch pops responses, explain returns a fixed verdict."""

    def __init__(self, responses=None, verdict=None):
        self.responses = list(responses or [])
        self.batches = []
        self.verdict = verdict
        self.explained = []

    def correct_batch(self, questions):
        self.batches.append([q.id for q in questions])
        r = self.responses.pop(0) if self.responses else None
        if isinstance(r, Exception):
            raise r
        if callable(r):
            return r(questions)
        return r

    def explain(self, question):
        self.explained.append(question.id)
        if isinstance(self.verdict, Exception):
            raise self.verdict
        return self.verdict or SingleCorrection(
            is_answer_correct=True, correct_answer_letter=question.correct_answer_letter,
            explanation="Because the reasoning says so, in about five sentences.",
        )

    def generate_topic_questions(self, topics, count):
        return []


class FakeIdentity:
    def authorization_url(self, state):
        return f"https://accounts.example/auth?state={state}"

    def exchange_code(self, code):
        return Identity(user_id=f"google:{code}", email=f"{code}@example.com", display_name=code.title(), avatar_url=None)


def good_batch(questions, letter=None):
    return json.dumps([
        {"id": q.id, "correctAnswerLetter": letter or q.correct_answer_letter,
         "explanation": f"Option {letter or q.correct_answer_letter} is right for {q.id} because of the physiology."}
        for q in questions
    ])


def make_questions(store, n, category="medicine", topic=None, letter="B"):
    return store.insert_questions([
        {"question_text": f"Question {i}?", "options": ["Alpha", "Bravo", "Charlie", "Delta"],
         "correct_answer_letter": letter, "explanation": None, "category": category, "topic": topic}
        for i in range(n)
    ])


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)

@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()

@pytest.fixture
def store(db):
    return QuestionStore(db)

@pytest.fixture
def fake_redis():
    return FakeRedis()

@pytest.fixture
def progress(fake_redis):
    return ProgressStore(client=fake_redis, ttl_seconds=60)

@pytest.fixture
def clock():
    return Clock()

@pytest.fixture
def fake_jobs():
    return FakeJobs()

@pytest.fixture
def generator():
    return FakeGenerator()

@pytest.fixture(autouse=True)
def denylist(fake_redis, monkeypatch):
    d = TokenDenylist(client=fake_redis)
    monkeypatch.setattr(core_auth, "denylist", d)
    return d

@pytest.fixture
def auth_service():
    svc = AuthService(identity_provider=FakeIdentity())
    svc.init()
    yield svc
    svc.teardown()

@pytest.fixture
def client(session_factory, fake_redis, progress, clock, fake_jobs, generator, auth_service):
    def override_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[deps.get_progress_store] = lambda: progress
    app.dependency_overrides[deps.get_latch_factory] = lambda: (lambda sid: RedisLatch(submit_key(sid), client=fake_redis))
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.dependency_overrides[deps.get_jobs] = lambda: fake_jobs
    app.dependency_overrides[deps.get_generator] = lambda: generator
    app.dependency_overrides[deps.get_auth_service] = lambda: auth_service
    yield TestClient(app)
    app.dependency_overrides.clear()

def login(client, user_id="tester", roles=("student",)):
    r = client.post("/v1/auth/mock-login", json={"user_id": user_id, "roles": list(roles)})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
