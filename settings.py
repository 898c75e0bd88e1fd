import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv


def _required(name: str) -> str:
    value = (os.getenv(name) or "").strip()
    if not value:
        raise RuntimeError(f"{name} missing")
    return value


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def parse_hour_window(raw: str) -> Tuple[int, int]:
    """'8-10' -> (8, 10). A single hour means a one-hour window."""
    raw = (raw or "").strip()
    if "-" in raw:
        start, end = raw.split("-", 1)
        return int(start), int(end)
    return int(raw), int(raw)


@dataclass
class Settings:
    slack_bot_token: str
    slack_app_token: str
    asana_pat: str

    escalation_channel: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    agent_model: str = "gpt-4.1-mini"

    db_path: str = "pulse.db"

    # cache refresh
    refresh_batch_size: int = 15
    refresh_batch_pause: float = 1.0
    refresh_time_budget: float = 840.0
    asana_max_attempts: int = 3

    # custom field names on the Asana side
    owner_field: str = "Responsable Proyecto"
    status_field: str = "Estado"
    business_id_field: str = "PMO ID"
    progress_field: str = "% Avance"

    conversation_ttl_hours: int = 24
    reminder_after_minutes: int = 60
    snooze_minutes: int = 60
    pulse_local_hours: Tuple[int, int] = (8, 10)
    user_projects_cache_hours: int = 24

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            slack_bot_token=_required("SLACK_BOT_TOKEN"),
            slack_app_token=_required("SLACK_APP_TOKEN"),
            asana_pat=_required("ASANA_PAT"),
            escalation_channel=(os.getenv("SLACK_ESCALATION_CHANNEL") or "").strip() or None,
            openai_api_key=(os.getenv("OPENAI_API_KEY") or "").strip() or None,
            openai_base_url=(os.getenv("OPENAI_BASE_URL") or "").strip() or None,
            agent_model=os.getenv("AGENT_MODEL", "gpt-4.1-mini"),
            db_path=os.getenv("PULSE_DB_PATH", "pulse.db"),
            refresh_batch_size=_int("REFRESH_BATCH_SIZE", 15),
            refresh_batch_pause=_float("REFRESH_BATCH_PAUSE", 1.0),
            refresh_time_budget=_float("REFRESH_TIME_BUDGET", 840.0),
            asana_max_attempts=_int("ASANA_MAX_ATTEMPTS", 3),
            owner_field=os.getenv("ASANA_OWNER_FIELD", "Responsable Proyecto"),
            status_field=os.getenv("ASANA_STATUS_FIELD", "Estado"),
            business_id_field=os.getenv("ASANA_BUSINESS_ID_FIELD", "PMO ID"),
            progress_field=os.getenv("ASANA_PROGRESS_FIELD", "% Avance"),
            conversation_ttl_hours=_int("CONVERSATION_TTL_HOURS", 24),
            reminder_after_minutes=_int("REMINDER_AFTER_MINUTES", 60),
            snooze_minutes=_int("SNOOZE_MINUTES", 60),
            pulse_local_hours=parse_hour_window(os.getenv("PULSE_LOCAL_HOURS", "8-10")),
            user_projects_cache_hours=_int("USER_PROJECTS_CACHE_HOURS", 24),
        )
