"""Shared fixtures: a real SQLite store in tmp_path, a recording Slack gateway and a fixed clock."""
from datetime import datetime, timedelta, timezone

import pytest

from agent import AgentResult
from lookup import ProjectLookup
from memory import Memory


class FakeGateway:
    """Records every outbound call instead of talking to Slack."""

    def __init__(self, escalation_channel="C-ESCALATIONS"):
        self.escalation_channel = escalation_channel
        self.calls = []

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))

    def send_message(self, channel, text, blocks=None):
        self._record("message", channel=channel, text=text)

    def send_update_request(self, user_id, project_name, project_gid):
        self._record("update_request", user_id=user_id, project_name=project_name,
                     project_gid=project_gid)

    def send_escalation(self, project_name, user_id, status, advances, has_blockers, reason=None):
        self._record("escalation", project_name=project_name, user_id=user_id, status=status,
                     advances=advances, has_blockers=has_blockers, reason=reason)
        return True

    def send_name_prompt(self, user_id):
        self._record("name_prompt", user_id=user_id)

    def send_timezone_prompt(self, user_id):
        self._record("timezone_prompt", user_id=user_id)

    def send_onboarding_complete(self, user_id, tz):
        self._record("onboarding_complete", user_id=user_id, tz=tz)

    def send_help(self, user_id):
        self._record("help", user_id=user_id)

    def of(self, name):
        return [kw for n, kw in self.calls if n == name]

    def texts(self):
        return [kw["text"] for n, kw in self.calls if n == "message"]


class FakeAgent:
    def __init__(self, result=None):
        self.result = result or AgentResult(response="agent says hi")
        self.seen = []

    def process(self, text):
        self.seen.append(text)
        return self.result


class Clock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def memory(tmp_path):
    m = Memory(str(tmp_path / "pulse.db"))
    m.init_db()
    return m


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    # Monday 12:00 UTC
    return Clock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def lookup(memory, gateway, clock):
    return ProjectLookup(memory, gateway, now=clock)
