import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Dict

from apscheduler.schedulers.background import BackgroundScheduler
from openai import OpenAI
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from agent import Agent
from asana_read import AsanaClient
from cache_refresh import CacheRefresher, FieldNames
from conversation import ActionPayload
from flow import PulseFlow
from lookup import ProjectLookup
from memory import Memory
from reminder import ReminderSweep
from settings import Settings
from slack_send import SlackGateway

APOLOGY = "Sorry, something went wrong on my side. Please try again in a few minutes."

ACTION_PATTERN = re.compile(r"^pulse\.")


def _apologize(gateway, user_id: str, logger: logging.Logger):
    try:
        gateway.send_message(user_id, APOLOGY)
    except Exception:
        logger.exception("could not deliver apology to %s", user_id)


def dispatch_message(flow: PulseFlow, event: Dict, logger: logging.Logger):
    # DMs only; ignore bot messages + edits/joins/etc
    if event.get("channel_type") != "im":
        return
    if event.get("bot_id") or event.get("subtype"):
        return

    user_id = event.get("user")
    if not user_id:
        return

    try:
        flow.handle_message(user_id, event.get("text") or "")
    except Exception:
        logger.exception("message from %s failed", user_id)
        _apologize(flow.gateway, user_id, logger)


def dispatch_action(flow: PulseFlow, body: Dict, action: Dict, logger: logging.Logger):
    user_id = (body.get("user") or {}).get("id")
    if not user_id:
        return

    try:
        payload = ActionPayload.decode(action.get("value"))
    except ValueError:
        logger.warning("unreadable button payload from %s: %r", user_id, action.get("value"))
        return

    try:
        flow.handle_action(user_id, payload)
    except Exception:
        logger.exception("%s click from %s failed", payload.kind, user_id)
        _apologize(flow.gateway, user_id, logger)


def register_listeners(app: App, flow: PulseFlow):
    @app.event("message")
    def handle_message_events(event, logger):
        dispatch_message(flow, event, logger)

    @app.action(ACTION_PATTERN)
    def handle_pulse_action(ack, body, action, logger):
        ack()
        dispatch_action(flow, body, action, logger)


def run_scheduled_jobs(flow: PulseFlow, refresher: CacheRefresher, sweeper: ReminderSweep,
                       start: bool = True) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")

    # outreach Mondays and Thursdays; the local-hour check picks who is due
    scheduler.add_job(
        flow.run_scheduled_pulse,
        trigger="cron",
        day_of_week="mon,thu",
        minute=0,
        id="scheduled_pulse",
        replace_existing=True,
    )

    # first refresh right away so a fresh deploy has a cache
    scheduler.add_job(
        refresher.refresh_all,
        trigger="interval",
        minutes=60,
        id="cache_refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )

    scheduler.add_job(
        sweeper.sweep,
        trigger="interval",
        minutes=15,
        id="reminder_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if start:
        scheduler.start()
    return scheduler


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()

    memory = Memory(settings.db_path)
    memory.init_db()

    app = App(token=settings.slack_bot_token)
    gateway = SlackGateway(app.client, settings.escalation_channel)

    oai = None
    if settings.openai_api_key:
        oai = OpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    agent = Agent(oai, settings.agent_model)

    flow = PulseFlow(
        memory,
        gateway,
        agent,
        ProjectLookup(memory, gateway),
        conversation_ttl=timedelta(hours=settings.conversation_ttl_hours),
        snooze_for=timedelta(minutes=settings.snooze_minutes),
        pulse_hours=settings.pulse_local_hours,
        projects_cache_max_age=timedelta(hours=settings.user_projects_cache_hours),
    )

    refresher = CacheRefresher(
        AsanaClient(settings.asana_pat),
        memory,
        batch_size=settings.refresh_batch_size,
        batch_pause=settings.refresh_batch_pause,
        time_budget=settings.refresh_time_budget,
        max_attempts=settings.asana_max_attempts,
        fields=FieldNames(
            owner=settings.owner_field,
            status=settings.status_field,
            business_id=settings.business_id_field,
            progress=settings.progress_field,
        ),
    )
    sweeper = ReminderSweep(flow, remind_after=timedelta(minutes=settings.reminder_after_minutes))

    register_listeners(app, flow)
    run_scheduled_jobs(flow, refresher, sweeper)
    SocketModeHandler(app, settings.slack_app_token).start()


# --- Start the app ---
if __name__ == "__main__":
    main()
