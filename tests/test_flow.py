"""Tests for the update flow: onboarding, buttons, free text and scheduled outreach."""
from datetime import datetime, timezone

import pytest

from agent import AgentResult
from conversation import ActionPayload, PendingProject, Step
from flow import (
    PulseFlow,
    business_id_ordinal,
    clean_command,
    is_appropriate_time,
    queue_sort_key,
)


@pytest.fixture
def flow(memory, gateway, agent, lookup, clock):
    return PulseFlow(memory, gateway, agent, lookup, now=clock)


def _onboarded(memory, user_id="U1", name="Ana Gómez", tz="America/Lima"):
    memory.save_user({"user_id": user_id, "name": name, "timezone": tz, "onboarded": True})
    return memory.get_user(user_id)


def _cache(memory, gid, name, owner="Ana Gómez", business_id=None, status="En curso", **extra):
    project = {"gid": gid, "name": name, "owner": owner, "business_id": business_id, "status": status}
    project.update(extra)
    memory.upsert_project_cache(project)


def _status(flow, gid, value, user_id="U1"):
    flow.handle_action(user_id, ActionPayload("status", value, gid))


def _blockers(flow, gid, value, user_id="U1"):
    flow.handle_action(user_id, ActionPayload("blockers", value, gid))


class TestHelpers:
    def test_clean_command(self):
        assert clean_command("  Mis Proyectos!! ") == "mis proyectos"
        assert clean_command("Más tarde.") == "mas tarde"

    def test_queue_order(self):
        projects = [
            PendingProject("A", business_id=None),
            PendingProject("B", business_id="PMO-10"),
            PendingProject("C", business_id="PMO-2"),
        ]
        assert [p.gid for p in sorted(projects, key=queue_sort_key)] == ["C", "B", "A"]
        assert business_id_ordinal("pmo-0042") == 42

    def test_appropriate_time(self):
        window = (8, 10)
        assert is_appropriate_time("America/Lima", datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc), window)
        assert is_appropriate_time("America/Lima", datetime(2026, 10, 19, 15, 59, tzinfo=timezone.utc), window)
        assert not is_appropriate_time("America/Lima", datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc), window)
        assert not is_appropriate_time("America/Lima", datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc), window)

    def test_unknown_zone_does_not_block(self):
        now = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)
        assert is_appropriate_time(None, now, (8, 10))
        assert is_appropriate_time("Mars/Olympus_Mons", now, (8, 10))


class TestOnboarding:
    def test_full_onboarding(self, flow, memory, gateway):
        flow.handle_message("U1", "hi")
        assert gateway.of("name_prompt") == [{"user_id": "U1"}]
        assert memory.get_user("U1")["onboarded"] is False

        flow.handle_message("U1", "A")
        assert gateway.texts()[-1] == "Please enter your full name."
        assert memory.get_user("U1")["name"] is None

        flow.handle_message("U1", "Ana Gómez")
        assert memory.get_user("U1")["name"] == "Ana Gómez"
        assert len(gateway.of("timezone_prompt")) == 1

        flow.handle_action("U1", ActionPayload("timezone", "America/Lima"))
        user = memory.get_user("U1")
        assert user["onboarded"] is True
        assert user["timezone"] == "America/Lima"
        assert gateway.of("onboarding_complete") == [{"user_id": "U1", "tz": "America/Lima"}]

    def test_text_while_waiting_for_timezone_reprompts(self, flow, memory, gateway):
        memory.save_user({"user_id": "U1", "name": "Ana Gómez"})
        flow.handle_message("U1", "Lima please")
        assert len(gateway.of("timezone_prompt")) == 1
        assert memory.get_user("U1")["timezone"] is None

    def test_unknown_timezone_reprompts(self, flow, memory, gateway):
        memory.save_user({"user_id": "U1", "name": "Ana Gómez"})
        flow.handle_action("U1", ActionPayload("timezone", "Mars/Olympus_Mons"))
        assert len(gateway.of("timezone_prompt")) == 1
        assert memory.get_user("U1")["onboarded"] is False

    def test_timezone_before_name(self, flow, memory, gateway):
        flow.handle_action("U1", ActionPayload("timezone", "America/Lima"))
        assert gateway.of("name_prompt") == [{"user_id": "U1"}]
        assert memory.get_user("U1")["onboarded"] is False


class TestUpdateCycle:
    def test_two_projects_in_one_conversation(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        _cache(memory, "P2", "ERP", business_id="PMO-10")

        assert flow.start_outreach(user) == "started"
        assert gateway.of("update_request")[-1]["project_gid"] == "P1"

        _status(flow, "P1", "on_track")
        _blockers(flow, "P1", "no")
        assert "*progress*" in gateway.texts()[-1]

        flow.handle_message("U1", "Finished the API integration")

        saved = memory.get_last_updates("P1")
        assert len(saved) == 1
        assert saved[0]["advances"] == "Finished the API integration"
        assert saved[0]["status"] == "on_track"
        assert gateway.of("escalation") == []
        assert any("Update saved for *Portal*" in t for t in gateway.texts())

        # next project prompted without another scheduler run
        assert gateway.of("update_request")[-1]["project_gid"] == "P2"
        state = flow.load_state("U1")
        assert state.step == Step.AWAITING_STATUS
        assert state.current_project_gid == "P2"

        _status(flow, "P2", "on_track")
        _blockers(flow, "P2", "no")
        flow.handle_message("U1", "Data migrated")
        assert flow.load_state("U1") is None
        assert len(gateway.of("update_request")) == 2

    def test_consecutive_at_risk_escalates_once(self, flow, memory, gateway, clock):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")

        for note in ("Vendor is late", "Vendor still late"):
            assert flow.start_outreach(user) == "started"
            _status(flow, "P1", "at_risk")
            _blockers(flow, "P1", "no")
            flow.handle_message("U1", note)
            clock.advance(days=3)

        escalations = gateway.of("escalation")
        assert len(escalations) == 1
        assert escalations[0]["reason"] == "consecutive at-risk"
        assert escalations[0]["advances"] == "Vendor still late"

    def test_off_track_escalates(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")

        flow.start_outreach(user)
        _status(flow, "P1", "off_track")
        _blockers(flow, "P1", "yes")
        flow.handle_message("U1", "Budget frozen")

        assert [e["reason"] for e in gateway.of("escalation")] == ["off-track"]
        assert memory.get_last_updates("P1")[0]["has_blockers"] is True

    def test_blockers_before_status_reprompts(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        flow.start_outreach(user)

        _blockers(flow, "P1", "yes")

        assert gateway.texts()[-1] == "Please pick the project status first."
        assert len(gateway.of("update_request")) == 2
        assert flow.load_state("U1").step == Step.AWAITING_STATUS

    def test_blockers_for_other_project_reprompts(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        _cache(memory, "P2", "ERP", business_id="PMO-10")
        flow.start_outreach(user)
        _status(flow, "P1", "on_track")

        _blockers(flow, "P2", "no")

        assert gateway.texts()[-1] == "Please pick the project status first."
        assert gateway.of("update_request")[-1] == {"user_id": "U1", "project_name": "ERP",
                                                    "project_gid": "P2"}
        assert flow.load_state("U1").step == Step.AWAITING_BLOCKERS

    def test_status_for_project_outside_queue(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        _cache(memory, "P9", "Legacy", owner="Someone Else", business_id="PMO-9")
        flow.start_outreach(user)

        _status(flow, "P9", "at_risk")

        state = flow.load_state("U1")
        assert state.current_project_gid == "P9"
        assert state.current_project_name == "Legacy"
        assert [p.gid for p in state.pending_projects] == ["P9", "P1"]

    def test_status_click_after_state_expired(self, flow, memory, gateway):
        _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")

        _status(flow, "P1", "on_track")
        _blockers(flow, "P1", "no")
        flow.handle_message("U1", "All good")

        assert memory.get_last_updates("P1")[0]["project_name"] == "Portal"
        assert flow.load_state("U1") is None

    def test_answering_a_later_project_first_keeps_the_others(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-1")
        _cache(memory, "P2", "ERP", business_id="PMO-2")
        _cache(memory, "P3", "CRM", business_id="PMO-3")
        flow.start_outreach(user)

        _status(flow, "P3", "on_track")
        _blockers(flow, "P3", "no")
        flow.handle_message("U1", "done")

        assert len(memory.get_last_updates("P3")) == 1
        assert flow.load_state("U1").current_project_gid == "P1"
        assert gateway.of("update_request")[-1]["project_gid"] == "P1"

        for gid in ("P1", "P2"):
            _status(flow, gid, "on_track")
            _blockers(flow, gid, "no")
            flow.handle_message("U1", f"{gid} on schedule")

        assert len(memory.get_last_updates("P1")) == 1
        assert len(memory.get_last_updates("P2")) == 1
        assert flow.load_state("U1") is None

    def test_commands_win_over_progress_notes(self, flow, memory, gateway):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        flow.start_outreach(user)
        _status(flow, "P1", "on_track")
        _blockers(flow, "P1", "no")

        flow.handle_message("U1", "help")

        assert gateway.of("help") == [{"user_id": "U1"}]
        assert memory.get_last_updates("P1") == []
        assert flow.load_state("U1").step == Step.AWAITING_ADVANCES


class TestFreeText:
    def test_snooze(self, flow, memory, gateway, clock):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        flow.start_outreach(user)

        flow.handle_message("U1", "Later!")

        state = flow.load_state("U1")
        assert state.is_snoozed(clock())
        clock.advance(minutes=61)
        assert not state.is_snoozed(clock())
        assert gateway.texts()[-1] == "Sure, I'll check back in 60 minutes."

    def test_later_without_flow_goes_to_agent(self, flow, memory, gateway, agent):
        _onboarded(memory)
        flow.handle_message("U1", "later")
        assert agent.seen == ["later"]
        assert gateway.texts()[-1] == "agent says hi"

    def test_reset(self, flow, memory, gateway):
        _onboarded(memory)
        flow.handle_message("U1", "reset")
        assert memory.get_user("U1") is None

    def test_business_id_lookup(self, flow, memory, gateway):
        _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-911", due_on="2026-12-01")

        flow.handle_message("U1", "what about pmo 911")

        texts = gateway.texts()
        assert texts[-2] == "Looking up PMO-911..."
        assert texts[-1].startswith("*Portal*")
        assert "- Due: 2026-12-01" in texts[-1]

    def test_my_projects(self, flow, memory, gateway):
        _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        flow.handle_message("U1", "My projects")
        assert gateway.texts()[-1].startswith("*Your projects (1):*")

    def test_agent_tool_call(self, flow, memory, gateway, agent):
        _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-911")
        agent.result = AgentResult(tool="search_project", params={"business_id": "pmo911"})

        flow.handle_message("U1", "can you find the portal one for me")

        assert gateway.texts()[-1].startswith("*Portal*")

    def test_agent_unknown_tool(self, flow, memory, gateway, agent):
        _onboarded(memory)
        agent.result = AgentResult(tool="launch_rockets", params={})
        flow.handle_message("U1", "do something")
        assert gateway.texts()[-1] == 'I did not get that. Write "help" to see what I can do.'


class TestOutreach:
    def test_queue_filters_and_order(self, flow, memory, clock):
        user = _onboarded(memory)
        _cache(memory, "P1", "Done today", business_id="PMO-1")
        _cache(memory, "P2", "Closed", business_id="PMO-2", status="Completed")
        _cache(memory, "P3", "No id")
        _cache(memory, "P4", "Late", business_id="PMO-40")
        _cache(memory, "P5", "Early", business_id="PMO-5")

        queue = flow.build_queue(user, {"P1"})

        assert [p.gid for p in queue] == ["P5", "P4", "P3"]

    def test_project_closed_since_list_was_cached_is_not_queued(self, flow, memory, clock):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-1")
        _cache(memory, "P2", "Closed", business_id="PMO-2")
        _cache(memory, "P3", "Done", business_id="PMO-3")
        assert [p.gid for p in flow.build_queue(user, ())] == ["P1", "P2", "P3"]

        # the refresh drops completed projects from the project cache
        memory.delete_project_cache("P2")
        _cache(memory, "P3", "Done", business_id="PMO-3", status="Completed")

        assert [p.gid for p in flow.build_queue(user, ())] == ["P1"]

    def test_user_project_list_expires_on_the_flow_clock(self, flow, memory, clock):
        user = _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-1")
        assert [p.gid for p in flow.build_queue(user, ())] == ["P1"]

        _cache(memory, "P2", "New", business_id="PMO-2")
        clock.advance(hours=23)
        assert [p.gid for p in flow.build_queue(user, ())] == ["P1"]

        clock.advance(hours=2)
        assert [p.gid for p in flow.build_queue(user, ())] == ["P1", "P2"]

    def test_busy_and_empty(self, flow, memory, clock):
        user = _onboarded(memory)
        assert flow.start_outreach(user) == "empty"

        _cache(memory, "P1", "Portal", business_id="PMO-2")
        # the per-user project list is cached, refresh it by hand
        memory.cache_user_projects("U1", [{"gid": "P1", "name": "Portal", "business_id": "PMO-2"}], now=clock())
        assert flow.start_outreach(user) == "started"
        assert flow.start_outreach(user) == "busy"

    def test_scheduled_pulse(self, flow, memory, gateway, clock, monkeypatch):
        clock.advance(hours=2)  # 14:00 UTC, 09:00 in Lima
        _onboarded(memory, "U1", "Ana Gómez", "America/Lima")
        _onboarded(memory, "U2", "Ken Sato", "Asia/Tokyo")
        _onboarded(memory, "U3", "Nobody Owns", "America/Lima")
        busy = _onboarded(memory, "U4", "Luis Pérez", "America/Lima")
        _onboarded(memory, "U5", "Broken User", "America/Lima")
        _cache(memory, "P1", "Portal", owner="Ana Gómez", business_id="PMO-2")
        _cache(memory, "P2", "Tokyo", owner="Ken Sato", business_id="PMO-3")
        _cache(memory, "P3", "ERP", owner="Luis Pérez", business_id="PMO-4")
        flow.start_outreach(busy)

        real_start = flow.start_outreach

        def start(user, updated_today=()):
            if user["user_id"] == "U5":
                raise RuntimeError("boom")
            return real_start(user, updated_today)

        monkeypatch.setattr(flow, "start_outreach", start)

        stats = flow.run_scheduled_pulse()

        assert stats["users_processed"] == 5
        assert stats["flows_started"] == 1
        assert stats["skipped_hours"] == 1
        assert stats["skipped_empty"] == 1
        assert stats["skipped_busy"] == 1
        assert [e["user_id"] for e in stats["errors"]] == ["U5"]
        assert flow.load_state("U1").current_project_gid == "P1"
        assert flow.load_state("U2") is None

    def test_scheduled_pulse_skips_projects_updated_today(self, flow, memory, clock):
        clock.advance(hours=2)
        _onboarded(memory)
        _cache(memory, "P1", "Portal", business_id="PMO-2")
        memory.save_update({"project_gid": "P1", "user_id": "U1", "status": "on_track"}, now=clock())

        stats = flow.run_scheduled_pulse()

        assert stats["skipped_empty"] == 1
        assert flow.load_state("U1") is None
