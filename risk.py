"""Risk rules for project updates.

Alert when:
- the project is reported off track
- the project is at risk for the second report in a row
- a blocker is reported on a project that is not on track
"""
from typing import Dict, List, Optional, Sequence


RISK_SCORES = {
    "on_track": 0,
    "at_risk": 1,
    "off_track": 2,
}

REASON_OFF_TRACK = "off-track"
REASON_CONSECUTIVE_AT_RISK = "consecutive at-risk"
REASON_BLOCKER = "blocker on at-risk project"


def should_alert(current: Dict, prior_updates: Sequence[Dict] = ()) -> Dict:
    """prior_updates must be newest first; only the first one is looked at."""
    status = current.get("status")
    has_blockers = bool(current.get("has_blockers"))

    if status == "off_track":
        return {"should_alert": True, "reason": REASON_OFF_TRACK}

    if status == "at_risk" and prior_updates:
        last = prior_updates[0] or {}
        if last.get("status") == "at_risk":
            return {"should_alert": True, "reason": REASON_CONSECUTIVE_AT_RISK}

    if has_blockers and status != "on_track":
        return {"should_alert": True, "reason": REASON_BLOCKER}

    return {"should_alert": False, "reason": None}


def risk_score(status: Optional[str]) -> int:
    return RISK_SCORES.get(status, 0)


def analyze_project_risk(project_gid: str, memory) -> Dict:
    """Risk level and flags from the last three updates of a project."""
    updates = memory.get_last_updates(project_gid, 3)
    if not updates:
        return {
            "project_gid": project_gid,
            "risk_level": "unknown",
            "reason": "no updates yet",
            "alerts": [],
            "should_alert": False,
        }

    latest, previous = updates[0], updates[1:]
    decision = should_alert(latest, previous)

    risk_level = "low"
    alerts: List[str] = []
    if latest["status"] == "off_track":
        risk_level = "high"
        alerts.append("off track")
    elif latest["status"] == "at_risk":
        risk_level = "medium"
        alerts.append("at risk")

    if latest.get("has_blockers"):
        if risk_level == "low":
            risk_level = "medium"
        alerts.append("active blockers")

    if previous:
        # newest first, so a worsening trend is non-increasing down the list
        statuses = [u["status"] for u in updates]
        worsening = all(risk_score(statuses[i]) >= risk_score(statuses[i + 1])
                        for i in range(len(statuses) - 1))
        if worsening and risk_score(latest["status"]) > 0:
            alerts.append("rising risk trend")

    return {
        "project_gid": project_gid,
        "risk_level": risk_level,
        "reason": decision["reason"],
        "alerts": alerts,
        "should_alert": decision["should_alert"],
        "latest_status": latest["status"],
        "has_blockers": bool(latest.get("has_blockers")),
        "last_update_at": latest.get("timestamp"),
    }


def risk_summary(analyses: Sequence[Dict]) -> Dict:
    summary = {
        "total": len(analyses),
        "by_risk_level": {"high": 0, "medium": 0, "low": 0, "unknown": 0},
        "by_status": {"on_track": 0, "at_risk": 0, "off_track": 0},
        "with_blockers": 0,
        "needing_alert": [],
    }
    for a in analyses:
        level = a.get("risk_level", "unknown")
        summary["by_risk_level"][level] = summary["by_risk_level"].get(level, 0) + 1
        status = a.get("latest_status")
        if status:
            summary["by_status"][status] = summary["by_status"].get(status, 0) + 1
        if a.get("has_blockers"):
            summary["with_blockers"] += 1
        if a.get("should_alert"):
            summary["needing_alert"].append({"project_gid": a.get("project_gid"), "reason": a.get("reason")})
    return summary
