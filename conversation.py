"""Per-user conversation state for the multi-project update flow.

State changes only go through reduce(state, command), a pure function
that returns the full next state (or None once the flow is over).
"""
import json
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from memory import parse_iso

STATUSES = ("on_track", "at_risk", "off_track")


class Step(str, Enum):
    AWAITING_STATUS = "awaiting_status"
    AWAITING_BLOCKERS = "awaiting_blockers"
    AWAITING_ADVANCES = "awaiting_advances"


class InvalidTransition(Exception):
    """A command that makes no sense in the current step."""


@dataclass(frozen=True)
class PendingProject:
    gid: str
    name: Optional[str] = None
    business_id: Optional[str] = None
    last_status: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "gid": self.gid,
            "name": self.name,
            "business_id": self.business_id,
            "last_status": self.last_status,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "PendingProject":
        return cls(
            gid=str(d["gid"]),
            name=d.get("name"),
            business_id=d.get("business_id"),
            last_status=d.get("last_status") or d.get("status"),
        )


@dataclass(frozen=True)
class ConversationState:
    user_id: str
    step: Step
    pending_projects: List[PendingProject]
    current_index: int = 0
    status: Optional[str] = None
    has_blockers: Optional[bool] = None
    last_prompt_at: Optional[str] = None
    snooze_until: Optional[str] = None
    started_at: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.current_index < len(self.pending_projects):
            raise ValueError(
                f"current_index {self.current_index} outside queue of {len(self.pending_projects)}"
            )

    @property
    def current(self) -> PendingProject:
        return self.pending_projects[self.current_index]

    @property
    def current_project_gid(self) -> str:
        return self.current.gid

    @property
    def current_project_name(self) -> Optional[str]:
        return self.current.name

    @property
    def current_business_id(self) -> Optional[str]:
        return self.current.business_id

    def has_next(self) -> bool:
        return self.current_index + 1 < len(self.pending_projects)

    def is_snoozed(self, now: datetime) -> bool:
        until = parse_iso(self.snooze_until)
        return bool(until and until > now)

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "step": self.step.value,
            "pending_projects": [p.to_dict() for p in self.pending_projects],
            "current_index": self.current_index,
            # denormalized copies for readers of the raw record
            "current_project_gid": self.current_project_gid,
            "current_project_name": self.current_project_name,
            "current_business_id": self.current_business_id,
            "status": self.status,
            "has_blockers": self.has_blockers,
            "last_prompt_at": self.last_prompt_at,
            "snooze_until": self.snooze_until,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict]) -> Optional["ConversationState"]:
        """Rebuild a state; None for empty, cleared or non-flow records.

        Single-project records without a queue are read as a queue of one.
        """
        if not d or d.get("cleared"):
            return None
        try:
            step = Step(d.get("step"))
        except ValueError:
            return None

        raw_queue = d.get("pending_projects") or []
        if raw_queue:
            queue = [PendingProject.from_dict(p) for p in raw_queue]
            index = int(d.get("current_index") or 0)
        elif d.get("current_project_gid"):
            queue = [PendingProject(
                gid=str(d["current_project_gid"]),
                name=d.get("current_project_name"),
                business_id=d.get("current_business_id"),
            )]
            index = 0
        else:
            return None

        if not 0 <= index < len(queue):
            return None

        return cls(
            user_id=d["user_id"],
            step=step,
            pending_projects=queue,
            current_index=index,
            status=d.get("status"),
            has_blockers=d.get("has_blockers"),
            last_prompt_at=d.get("last_prompt_at"),
            snooze_until=d.get("snooze_until"),
            started_at=d.get("started_at"),
        )


# ---- commands ----

@dataclass(frozen=True)
class StartQueue:
    user_id: str
    projects: List[PendingProject]
    now: str


@dataclass(frozen=True)
class ChooseStatus:
    user_id: str
    project_gid: str
    status: str
    now: str
    # used only when the project is not already queued
    project_name: Optional[str] = None
    business_id: Optional[str] = None


@dataclass(frozen=True)
class ChooseBlockers:
    has_blockers: bool
    now: str


@dataclass(frozen=True)
class AdvanceProject:
    now: str


@dataclass(frozen=True)
class Snooze:
    until: str


@dataclass(frozen=True)
class MarkPrompted:
    now: str


Command = Union[StartQueue, ChooseStatus, ChooseBlockers, AdvanceProject, Snooze, MarkPrompted]


def reduce(state: Optional[ConversationState], command: Command) -> Optional[ConversationState]:
    if isinstance(command, StartQueue):
        if state is not None:
            raise InvalidTransition("a flow is already in progress")
        if not command.projects:
            return None
        return ConversationState(
            user_id=command.user_id,
            step=Step.AWAITING_STATUS,
            pending_projects=list(command.projects),
            current_index=0,
            last_prompt_at=command.now,
            started_at=command.now,
        )

    if isinstance(command, ChooseStatus):
        return _choose_status(state, command)

    if state is None:
        raise InvalidTransition(f"{type(command).__name__} without an active flow")

    if isinstance(command, ChooseBlockers):
        if state.step not in (Step.AWAITING_BLOCKERS, Step.AWAITING_ADVANCES) or not state.status:
            raise InvalidTransition("blockers answered before status")
        return replace(
            state,
            step=Step.AWAITING_ADVANCES,
            has_blockers=command.has_blockers,
            last_prompt_at=command.now,
        )

    if isinstance(command, AdvanceProject):
        if not state.has_next():
            return None
        return replace(
            state,
            step=Step.AWAITING_STATUS,
            current_index=state.current_index + 1,
            status=None,
            has_blockers=None,
            last_prompt_at=command.now,
            snooze_until=None,
        )

    if isinstance(command, Snooze):
        return replace(state, snooze_until=command.until)

    if isinstance(command, MarkPrompted):
        return replace(state, last_prompt_at=command.now)

    raise TypeError(f"unknown command {command!r}")


def _clicked_project(command: ChooseStatus) -> PendingProject:
    return PendingProject(gid=command.project_gid, name=command.project_name,
                          business_id=command.business_id)


def _choose_status(state: Optional[ConversationState], command: ChooseStatus) -> ConversationState:
    if command.status not in STATUSES:
        raise InvalidTransition(f"unknown status {command.status!r}")

    if state is None:
        # state lost or expired: the button still carries the project id
        return ConversationState(
            user_id=command.user_id,
            step=Step.AWAITING_BLOCKERS,
            pending_projects=[_clicked_project(command)],
            current_index=0,
            status=command.status,
            last_prompt_at=command.now,
            started_at=command.now,
        )

    queue = list(state.pending_projects)
    index = next((i for i, p in enumerate(queue) if p.gid == command.project_gid), None)
    if index is None:
        index = state.current_index
        queue.insert(index, _clicked_project(command))
    elif index != state.current_index:
        # answer the clicked project now; the rest keep their order
        clicked = queue.pop(index)
        index = state.current_index - 1 if index < state.current_index else state.current_index
        queue.insert(index, clicked)

    return replace(
        state,
        step=Step.AWAITING_BLOCKERS,
        pending_projects=queue,
        current_index=index,
        status=command.status,
        has_blockers=None,
        last_prompt_at=command.now,
    )


# ---- button payloads ----

@dataclass(frozen=True)
class ActionPayload:
    """What a button carries: action kind, project id and chosen value."""

    kind: str
    value: str
    project_id: Optional[str] = None

    KINDS = ("status", "blockers", "timezone")

    def encode(self) -> str:
        return json.dumps({"kind": self.kind, "project_id": self.project_id, "value": self.value},
                          separators=(",", ":"))

    @property
    def action_id(self) -> str:
        # unique per button inside one message
        return f"pulse.{self.kind}.{self.value}"

    @classmethod
    def decode(cls, raw: str) -> "ActionPayload":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"malformed action payload: {raw!r}") from e
        if not isinstance(data, dict) or data.get("kind") not in cls.KINDS or not data.get("value"):
            raise ValueError(f"malformed action payload: {raw!r}")
        return cls(kind=data["kind"], value=str(data["value"]), project_id=data.get("project_id"))
