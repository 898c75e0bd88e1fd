"""Re-prompt stalled update flows.

A flow is stale when its last prompt is older than the reminder interval
and it is not snoozed. If the project got an update some other way since
the prompt, the flow moves on instead of nagging.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict

from conversation import ConversationState, MarkPrompted, Step
from memory import parse_iso, utc_iso

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    checked: int = 0
    reminded: int = 0
    advanced: int = 0
    cleared: int = 0
    not_due: int = 0
    snoozed: int = 0
    failed: int = 0

    def as_dict(self) -> Dict:
        return dict(self.__dict__)


class ReminderSweep:
    def __init__(self, flow, remind_after: timedelta = timedelta(hours=1)):
        self.flow = flow
        self.remind_after = remind_after

    @property
    def memory(self):
        return self.flow.memory

    @property
    def gateway(self):
        return self.flow.gateway

    def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        for raw in self.memory.get_active_conversation_states():
            summary.checked += 1
            try:
                outcome = self._sweep_one(ConversationState.from_dict(raw))
            except Exception:
                logger.exception("reminder failed for %s", (raw or {}).get("user_id"))
                summary.failed += 1
                continue
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        logger.info("[reminder] %s", summary.as_dict())
        return summary

    def _sweep_one(self, state) -> str:
        if state is None:
            return "not_due"

        now = self.flow.now()
        if state.is_snoozed(now):
            return "snoozed"

        last_prompt = parse_iso(state.last_prompt_at)
        if last_prompt is None or now - last_prompt < self.remind_after:
            return "not_due"

        latest = self.memory.get_last_updates(state.current_project_gid, 1)
        latest_at = parse_iso(latest[0]["timestamp"]) if latest else None
        if latest_at and latest_at > last_prompt:
            # answered through another path
            new_state = self.flow.advance_to_next_project(state.user_id, state)
            return "advanced" if new_state is not None else "cleared"

        self._remind(state)
        self.flow.apply(state.user_id, state, MarkPrompted(now=utc_iso(now)))
        return "reminded"

    def _remind(self, state: ConversationState):
        name = state.current_project_name or "your project"
        if state.step == Step.AWAITING_STATUS:
            self.gateway.send_update_request(state.user_id, state.current_project_name,
                                             state.current_project_gid)
        elif state.step == Step.AWAITING_BLOCKERS:
            self.gateway.send_message(
                state.user_id,
                f"Reminder: let me know if there are blockers on *{name}*. "
                'Need more time? Write "later".',
            )
        else:
            self.gateway.send_message(
                state.user_id,
                f"Reminder: send me the progress notes for *{name}*. "
                'Need more time? Write "later".',
            )
