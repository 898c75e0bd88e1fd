import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from conversation import ActionPayload

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "on_track": "On Track",
    "at_risk": "At Risk",
    "off_track": "Off Track",
}

STATUS_EMOJI = {
    "on_track": "🟢",
    "at_risk": "🟡",
    "off_track": "🔴",
}

TIMEZONE_OPTIONS = [
    ("🇨🇱 Chile (Santiago)", "America/Santiago"),
    ("🇵🇪 Peru (Lima)", "America/Lima"),
    ("🇨🇴 Colombia (Bogotá)", "America/Bogota"),
    ("🇲🇽 Mexico (CDMX)", "America/Mexico_City"),
]

HELP_TEXT = (
    "*Project Pulse*\n"
    "On Mondays and Thursdays I ask for a quick status of each of your projects:\n"
    "1. pick the status (On Track / At Risk / Off Track)\n"
    "2. tell me if there are blockers\n"
    "3. write a short note on progress\n\n"
    "*Commands*\n"
    "• `help` - this message\n"
    "• `my projects` - projects where you are the owner\n"
    "• `PMO-123` - look up a project by its ID\n"
    "• `\"some name\"` - search projects by name\n"
    "• `later` - snooze reminders for an hour\n"
    "• `reset` - start your profile over"
)


def status_emoji(status: Optional[str]) -> str:
    return STATUS_EMOJI.get(status or "", "⚪")


def _button(text: str, payload: ActionPayload, style: Optional[str] = None) -> Dict:
    b = {
        "type": "button",
        "text": {"type": "plain_text", "text": text, "emoji": True},
        "value": payload.encode(),
        "action_id": payload.action_id,
    }
    if style:
        b["style"] = style
    return b


def update_request_blocks(project_name: str, project_gid: str) -> List[Dict]:
    def status(value: str, style: Optional[str] = None) -> Dict:
        return _button(f"{STATUS_EMOJI[value]} {STATUS_LABELS[value]}",
                       ActionPayload("status", value, project_gid), style)

    def blockers(value: str, label: str) -> Dict:
        return _button(label, ActionPayload("blockers", value, project_gid))

    return [
        {"type": "header", "text": {"type": "plain_text", "text": f"Update: {project_name}"[:150]}},
        {"type": "section", "text": {"type": "mrkdwn",
                                     "text": f"Hi! Time for the update on *{project_name}*."}},
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn", "text": "*What is the current status?*"}},
        {"type": "actions", "elements": [
            status("on_track", "primary"),
            status("at_risk"),
            status("off_track", "danger"),
        ]},
        {"type": "section", "text": {"type": "mrkdwn", "text": "*Any active blockers?*"}},
        {"type": "actions", "elements": [
            blockers("yes", "Yes, blocked"),
            blockers("no", "No blockers"),
        ]},
    ]


def timezone_blocks() -> List[Dict]:
    return [
        {"type": "section", "text": {"type": "mrkdwn",
                                     "text": "Great ✅\n\n*Which time zone are you in?*"}},
        {"type": "actions", "elements": [
            _button(label, ActionPayload("timezone", tz)) for label, tz in TIMEZONE_OPTIONS
        ]},
    ]


def escalation_blocks(project_name: str, user_id: str, status: str, advances: str,
                      has_blockers: bool, reason: Optional[str]) -> List[Dict]:
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": f"⚠️ Alert: {project_name}"[:150]}},
        {"type": "section", "fields": [
            {"type": "mrkdwn", "text": f"*PM:*\n<@{user_id}>"},
            {"type": "mrkdwn", "text": f"*Status:*\n{status_emoji(status)} {STATUS_LABELS.get(status, status)}"},
            {"type": "mrkdwn", "text": f"*Blockers:*\n{'🚫 Yes' if has_blockers else '✅ No'}"},
            {"type": "mrkdwn", "text": f"*Date:*\n{today}"},
        ]},
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn",
                                     "text": f"*Reported progress:*\n>{advances or '_none_'}"}},
    ]
    if reason:
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"Reason: {reason}"}]})
    return blocks


class SlackGateway:
    """Outbound messages. Formatting lives here; callers pass semantic fields only."""

    def __init__(self, client, escalation_channel: Optional[str] = None):
        self.client = client
        self.escalation_channel = escalation_channel

    def send_message(self, channel: str, text: str, blocks: Optional[List[Dict]] = None):
        payload = {"channel": channel, "text": text or "Project Pulse"}
        if blocks:
            payload["blocks"] = blocks
        self.client.chat_postMessage(**payload)

    def send_update_request(self, user_id: str, project_name: Optional[str], project_gid: str):
        name = project_name or "your project"
        self.client.chat_postMessage(
            channel=user_id,
            text=f"Time for the update on {name}",
            blocks=update_request_blocks(name, project_gid),
        )
        logger.info("update request sent to %s for %s", user_id, project_gid)

    def send_escalation(self, project_name: Optional[str], user_id: str, status: str,
                        advances: str, has_blockers: bool, reason: Optional[str] = None) -> bool:
        if not self.escalation_channel:
            logger.error("SLACK_ESCALATION_CHANNEL not set, dropping alert for %s", project_name)
            return False
        name = project_name or "project"
        self.client.chat_postMessage(
            channel=self.escalation_channel,
            text=f"Alert: {name}",
            blocks=escalation_blocks(name, user_id, status, advances, has_blockers, reason),
        )
        logger.info("escalation sent for %s (%s)", name, reason)
        return True

    def send_name_prompt(self, user_id: str):
        self.send_message(
            user_id,
            "👋 Hi! I'm Project Pulse. I'll help you report the status of your projects.\n\n"
            "*What is your full name, exactly as it appears in Asana?*",
        )

    def send_timezone_prompt(self, user_id: str):
        self.send_message(user_id, "Which time zone are you in?", timezone_blocks())

    def send_onboarding_complete(self, user_id: str, tz: str):
        label = next((lbl for lbl, value in TIMEZONE_OPTIONS if value == tz), tz)
        self.send_message(
            user_id,
            f"All set 🎉\n• *Time zone:* {label}\n• *Updates:* Mondays and Thursdays, 9:00 local time\n\n"
            "Write *help* whenever you need it.",
        )

    def send_help(self, user_id: str):
        self.send_message(user_id, HELP_TEXT)
