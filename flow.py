"""Update-collection flow: onboarding, scheduled outreach, buttons and free text.

A user walks through status -> blockers -> progress notes for each
project in their queue. All state lives in the store; this module only
loads it, runs a command through conversation.reduce and saves the result.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent import AgentResult
from conversation import (
    ActionPayload,
    AdvanceProject,
    ChooseBlockers,
    ChooseStatus,
    Command,
    ConversationState,
    InvalidTransition,
    PendingProject,
    Snooze,
    StartQueue,
    Step,
    reduce,
)
from lookup import parse_business_id
from memory import Memory, normalize_text, utc_iso
from risk import should_alert
from slack_send import status_emoji

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2

HELP_COMMANDS = {"help", "ayuda"}
RESET_COMMANDS = {"reset"}
MY_PROJECTS_COMMANDS = {"my projects", "projects", "mis proyectos"}
SNOOZE_COMMANDS = {"later", "snooze", "remind me later", "ask me later", "not now", "mas tarde"}

_ORDINAL = re.compile(r"(\d+)")


def clean_command(text: str) -> str:
    return re.sub(r"[\s.!?¡¿]+$", "", normalize_text(text)).strip()


def business_id_ordinal(business_id: Optional[str]) -> Optional[int]:
    m = _ORDINAL.search(business_id or "")
    return int(m.group(1)) if m else None


def queue_sort_key(project: PendingProject) -> Tuple[int, int]:
    ordinal = business_id_ordinal(project.business_id)
    return (0, ordinal) if ordinal is not None else (1, 0)


def is_appropriate_time(tz_name: Optional[str], now: datetime, window: Tuple[int, int]) -> bool:
    """Local hour of the user inside the window. Unknown zones never block outreach."""
    if not tz_name:
        return True
    try:
        local = now.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown time zone %r, contacting anyway", tz_name)
        return True
    start, end = window
    return start <= local.hour <= end


class PulseFlow:
    def __init__(
        self,
        memory: Memory,
        gateway,
        agent,
        lookup,
        *,
        conversation_ttl: timedelta = timedelta(hours=24),
        snooze_for: timedelta = timedelta(hours=1),
        pulse_hours: Tuple[int, int] = (8, 10),
        projects_cache_max_age: timedelta = timedelta(hours=24),
        now: Callable[[], datetime] = None,
    ):
        self.memory = memory
        self.gateway = gateway
        self.agent = agent
        self.lookup = lookup
        self.conversation_ttl = conversation_ttl
        self.snooze_for = snooze_for
        self.pulse_hours = pulse_hours
        self.projects_cache_max_age = projects_cache_max_age
        self.now = now or (lambda: datetime.now(timezone.utc))

    # ---- state io ----

    def load_state(self, user_id: str) -> Optional[ConversationState]:
        return ConversationState.from_dict(self.memory.get_conversation_state(user_id))

    def save_state(self, user_id: str, state: Optional[ConversationState]):
        if state is None:
            self.memory.clear_conversation_state(user_id)
        else:
            self.memory.set_conversation_state(user_id, state.to_dict(),
                                               self.conversation_ttl.total_seconds())

    def apply(self, user_id: str, state: Optional[ConversationState],
              command: Command) -> Optional[ConversationState]:
        new_state = reduce(state, command)
        self.save_state(user_id, new_state)
        return new_state

    # ---- inbound: free text ----

    def handle_message(self, user_id: str, text: str):
        text = (text or "").strip()
        user = self.memory.get_user(user_id)
        if not user or not user["onboarded"]:
            self._onboard(user_id, text, user)
            return

        command = clean_command(text)

        if command in HELP_COMMANDS:
            self.gateway.send_help(user_id)
            return

        if command in RESET_COMMANDS:
            self.memory.delete_user(user_id)
            self.gateway.send_message(user_id, "Profile reset. Write anything to start over.")
            return

        if command in MY_PROJECTS_COMMANDS:
            self.lookup.my_projects(user_id, user)
            return

        state = self.load_state(user_id)

        if state is not None and command in SNOOZE_COMMANDS:
            until = utc_iso(self.now() + self.snooze_for)
            self.apply(user_id, state, Snooze(until=until))
            minutes = int(self.snooze_for.total_seconds() // 60)
            self.gateway.send_message(user_id, f"Sure, I'll check back in {minutes} minutes.")
            return

        if state is not None and state.step == Step.AWAITING_ADVANCES:
            self.complete_project(user_id, state, text)
            return

        if self.lookup.handle_search(user_id, text):
            return

        business_id = parse_business_id(text)
        if business_id:
            self.gateway.send_message(user_id, f"Looking up {business_id}...")
            self.lookup.by_business_id(user_id, business_id)
            return

        self._ask_agent(user_id, user, text)

    def _onboard(self, user_id: str, text: str, user: Optional[Dict]):
        if not user:
            self.memory.save_user({"user_id": user_id, "onboarded": False})
            self.gateway.send_name_prompt(user_id)
            return

        if not user.get("name"):
            if len(text) >= MIN_NAME_LENGTH:
                self.memory.update_user(user_id, name=text)
                self.gateway.send_timezone_prompt(user_id)
            else:
                self.gateway.send_message(user_id, "Please enter your full name.")
            return

        self.gateway.send_timezone_prompt(user_id)

    def _ask_agent(self, user_id: str, user: Dict, text: str):
        result: AgentResult = self.agent.process(text)
        if result.response:
            self.gateway.send_message(user_id, result.response)
            return

        if result.tool == "search_project":
            raw = str(result.params.get("business_id") or "")
            business_id = parse_business_id(raw) or raw.strip().upper()
            if business_id:
                self.lookup.by_business_id(user_id, business_id)
                return
        elif result.tool == "my_projects":
            self.lookup.my_projects(user_id, user)
            return
        elif result.tool == "show_help":
            self.gateway.send_help(user_id)
            return
        elif result.tool == "direct_reply" and result.params.get("message"):
            self.gateway.send_message(user_id, str(result.params["message"]))
            return

        self.gateway.send_message(user_id, 'I did not get that. Write "help" to see what I can do.')

    # ---- inbound: buttons ----

    def handle_action(self, user_id: str, payload: ActionPayload):
        if payload.kind == "status":
            self.handle_status(user_id, payload.project_id, payload.value)
        elif payload.kind == "blockers":
            self.handle_blockers(user_id, payload.project_id, payload.value == "yes")
        elif payload.kind == "timezone":
            self.handle_timezone(user_id, payload.value)

    def handle_status(self, user_id: str, project_gid: str, status: str):
        state = self.load_state(user_id)

        name = business_id = None
        queued = state and next((p for p in state.pending_projects if p.gid == project_gid), None)
        if not queued:
            cached = self.memory.get_project_cache(project_gid)
            if cached:
                name, business_id = cached["name"], cached["business_id"]

        command = ChooseStatus(user_id=user_id, project_gid=project_gid, status=status,
                               now=utc_iso(self.now()), project_name=name, business_id=business_id)
        try:
            self.apply(user_id, state, command)
        except InvalidTransition as e:
            logger.warning("status click ignored for %s: %s", user_id, e)
            self.gateway.send_message(user_id, "Please pick one of the status buttons.")

    def handle_blockers(self, user_id: str, project_gid: Optional[str], has_blockers: bool):
        state = self.load_state(user_id)
        on_current = state is not None and (not project_gid or state.current_project_gid == project_gid)

        if on_current:
            try:
                new_state = self.apply(user_id, state,
                                       ChooseBlockers(has_blockers=has_blockers, now=utc_iso(self.now())))
            except InvalidTransition as e:
                logger.info("blockers click ignored for %s: %s", user_id, e)
            else:
                name = new_state.current_project_name or "the project"
                self.gateway.send_message(
                    user_id, f"Please describe briefly the *progress* on *{name}* since your last update:"
                )
                return

        self.gateway.send_message(user_id, "Please pick the project status first.")
        if project_gid:
            queued = state and next((p for p in state.pending_projects if p.gid == project_gid), None)
            self.gateway.send_update_request(user_id, queued.name if queued else None, project_gid)

    def handle_timezone(self, user_id: str, tz_name: str):
        user = self.memory.get_user(user_id)
        if not user or not user.get("name"):
            if not user:
                self.memory.save_user({"user_id": user_id, "onboarded": False})
            self.gateway.send_name_prompt(user_id)
            return
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            self.gateway.send_timezone_prompt(user_id)
            return
        self.memory.update_user(user_id, timezone=tz_name, onboarded=True)
        self.gateway.send_onboarding_complete(user_id, tz_name)

    # ---- closing a project ----

    def complete_project(self, user_id: str, state: ConversationState, advances: str):
        project = state.current
        prior = self.memory.get_last_updates(project.gid, 2)
        self.memory.save_update({
            "project_gid": project.gid,
            "project_name": project.name,
            "user_id": user_id,
            "status": state.status,
            "advances": advances,
            "has_blockers": bool(state.has_blockers),
        }, now=self.now())

        decision = should_alert({"status": state.status, "has_blockers": state.has_blockers}, prior)
        if decision["should_alert"]:
            self.gateway.send_escalation(project.name, user_id, state.status, advances,
                                         bool(state.has_blockers), decision["reason"])

        self.gateway.send_message(
            user_id, f"{status_emoji(state.status)} Update saved for *{project.name or 'the project'}*. Thanks!"
        )
        self.advance_to_next_project(user_id, state)

    def advance_to_next_project(self, user_id: str,
                                state: ConversationState) -> Optional[ConversationState]:
        """Move to the next queued project and prompt for it; clears the state at the end."""
        new_state = self.apply(user_id, state, AdvanceProject(now=utc_iso(self.now())))
        if new_state is not None:
            self.gateway.send_update_request(user_id, new_state.current_project_name,
                                             new_state.current_project_gid)
        return new_state

    # ---- scheduled outreach ----

    def user_projects(self, user: Dict) -> List[Dict]:
        user_id = user["user_id"]
        now = self.now()
        projects = self.memory.get_cached_user_projects(
            user_id, self.projects_cache_max_age.total_seconds(), now=now)
        if projects is not None:
            return projects
        if not user.get("name"):
            return []
        projects = [
            {"gid": p["gid"], "name": p["name"], "business_id": p["business_id"], "status": p["status"]}
            for p in self.memory.get_projects_by_owner_name(user["name"])
        ]
        self.memory.cache_user_projects(user_id, projects, now=now)
        return projects

    def build_queue(self, user: Dict, updated_today: Iterable[str]) -> List[PendingProject]:
        done: Set[str] = set(updated_today)
        queue = []
        for p in self.user_projects(user):
            if p["gid"] in done:
                continue
            # the per-user list can be a day old; completed projects leave the cache
            current = self.memory.get_project_cache(p["gid"])
            if current is None or (current.get("status") or "").strip().lower() == "completed":
                continue
            queue.append(PendingProject(gid=current["gid"], name=current["name"],
                                        business_id=current["business_id"],
                                        last_status=current["status"]))
        return sorted(queue, key=queue_sort_key)

    def start_outreach(self, user: Dict, updated_today: Iterable[str] = ()) -> str:
        """'started' | 'busy' | 'empty'."""
        user_id = user["user_id"]
        state = self.load_state(user_id)
        if state is not None:
            return "busy"

        queue = self.build_queue(user, updated_today)
        if not queue:
            return "empty"

        new_state = self.apply(user_id, None,
                               StartQueue(user_id=user_id, projects=queue, now=utc_iso(self.now())))
        self.gateway.send_update_request(user_id, new_state.current_project_name,
                                         new_state.current_project_gid)
        return "started"

    def run_scheduled_pulse(self) -> Dict:
        now = self.now()
        stats = {
            "users_processed": 0,
            "flows_started": 0,
            "skipped_busy": 0,
            "skipped_hours": 0,
            "skipped_empty": 0,
            "errors": [],
        }
        users = self.memory.get_all_onboarded_users()
        updated_today = set(self.memory.get_projects_updated_today(now))

        for user in users:
            stats["users_processed"] += 1
            try:
                if not is_appropriate_time(user.get("timezone"), now, self.pulse_hours):
                    stats["skipped_hours"] += 1
                    continue
                result = self.start_outreach(user, updated_today)
            except Exception as e:
                logger.exception("outreach failed for %s", user["user_id"])
                stats["errors"].append({"user_id": user["user_id"], "error": repr(e)})
                continue

            if result == "started":
                stats["flows_started"] += 1
            else:
                stats[f"skipped_{result}"] += 1

        logger.info("[pulse] %s", {k: (len(v) if k == "errors" else v) for k, v in stats.items()})
        return stats
