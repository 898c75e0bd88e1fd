"""Side commands that read the project cache: my projects, PMO ID lookup, search.

The search context (last results, page, last project shown) is kept in
the kv table, so browsing never touches the update flow.
"""
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from memory import Memory, normalize_text, parse_iso, utc_iso

logger = logging.getLogger(__name__)

PAGE_SIZE = 5
MAX_RESULTS = 50
FOLLOW_UP_WINDOW = timedelta(minutes=30)

BUSINESS_ID_RE = re.compile(r"\bpmo[\s-]?(\d+)\b", re.IGNORECASE)
QUOTED_RE = re.compile(r"[\"“”]([^\"“”]+)[\"“”]")
SELECTION_RE = re.compile(r"^(\d{1,2})$")

FILLER_WORDS = {
    "show", "me", "find", "search", "look", "for", "up", "give", "want", "need", "see",
    "please", "i", "the", "a", "an", "of", "with", "named", "called", "client", "clients",
    "project", "projects", "about", "info", "on",
}
NEXT_PAGE = {"next", "more", "next page", "more projects"}
END_DATE_PHRASES = ("when does it end", "end date", "due date", "when is it due")


def parse_business_id(text: str) -> Optional[str]:
    """'pmo911', 'PMO 911', 'PMO-911' -> 'PMO-911'."""
    m = BUSINESS_ID_RE.search(text or "")
    return f"PMO-{m.group(1)}" if m else None


def extract_search_query(text: str) -> Optional[str]:
    quoted = QUOTED_RE.search(text or "")
    if quoted:
        return quoted.group(1).strip() or None

    lower = normalize_text(text)
    words = re.findall(r"[a-z0-9]+", lower)
    if not any(w in ("project", "projects", "client", "clients") for w in words):
        return None
    cleaned = " ".join(w for w in words if w not in FILLER_WORDS)
    return cleaned if len(cleaned) >= 3 else None


def _na(value) -> str:
    return "N/A" if value is None or value == "" else str(value)


def format_project_details(p: Dict) -> str:
    updated = (p.get("last_update_at") or "")[:10] or "N/A"
    return "\n".join([
        f"*{p.get('name')}*",
        f"- PMO ID: {p.get('business_id') or 'PMO-N/A'}",
        f"- Owner: {p.get('owner') or 'Unassigned'}",
        f"- Status: {p.get('status') or 'No status'}",
        f"- Last update ({updated}): {p.get('last_update_text') or 'No update'}",
        f"- Progress: {_na(p.get('progress'))}",
        f"- Due: {_na(p.get('due_on'))}",
        f"- Pending tasks: {_na(p.get('pending_tasks'))} / {_na(p.get('total_tasks'))}",
    ])


def format_project_line(p: Dict) -> str:
    return " | ".join([
        p.get("business_id") or "PMO-N/A",
        p.get("name") or "",
        p.get("status") or "No status",
        _na(p.get("progress")),
        _na(p.get("due_on")),
    ])


class ProjectLookup:
    def __init__(self, memory: Memory, gateway, now: Callable[[], datetime] = None):
        self.memory = memory
        self.gateway = gateway
        self.now = now or (lambda: datetime.now(timezone.utc))

    # ---- search context ----

    def _key(self, user_id: str) -> str:
        return f"search:{user_id}"

    def _load(self, user_id: str) -> Dict:
        raw = self.memory.kv_get(self._key(user_id), "")
        return json.loads(raw) if raw else {}

    def _save(self, user_id: str, ctx: Dict):
        self.memory.kv_set(self._key(user_id), json.dumps(ctx))

    # ---- commands ----

    def my_projects(self, user_id: str, user: Optional[Dict]):
        name = (user or {}).get("name")
        if not name:
            self.gateway.send_message(user_id, 'I don\'t have your name yet. Write "reset" to set up your profile.')
            return
        projects = self.memory.get_projects_by_owner_name(name)
        if not projects:
            self.gateway.send_message(
                user_id,
                f"I have no cached projects for *{name}* yet. The project cache refreshes every hour.",
            )
            return
        lines = "\n".join(f"- {format_project_line(p)}" for p in projects)
        self.gateway.send_message(user_id, f"*Your projects ({len(projects)}):*\n{lines}")

    def by_business_id(self, user_id: str, business_id: str):
        project = self.memory.get_project_by_business_id(business_id)
        if not project:
            self.gateway.send_message(user_id, f"I couldn't find a project with ID {business_id}.")
            return
        self.show_project(user_id, project)

    def show_project(self, user_id: str, project: Dict):
        self.gateway.send_message(user_id, format_project_details(project))
        ctx = self._load(user_id)
        ctx["last_project"] = {
            "gid": project.get("gid"),
            "name": project.get("name"),
            "due_on": project.get("due_on"),
            "at": utc_iso(self.now()),
        }
        self._save(user_id, ctx)

    def handle_search(self, user_id: str, text: str) -> bool:
        """True when the message was a search-related command and got answered."""
        t = normalize_text(text)
        ctx = self._load(user_id)

        last = ctx.get("last_project")
        if last and any(p in t for p in END_DATE_PHRASES):
            shown_at = parse_iso(last.get("at"))
            if shown_at and self.now() - shown_at <= FOLLOW_UP_WINDOW:
                if last.get("due_on"):
                    self.gateway.send_message(user_id, f"*{last.get('name')}* is due on {last['due_on']}.")
                else:
                    self.gateway.send_message(user_id, "That project has no end date on record.")
                return True

        results: List[Dict] = ctx.get("results") or []
        if results and t in NEXT_PAGE:
            return self._send_page(user_id, ctx, ctx.get("page", 0) + 1)

        if results:
            m = SELECTION_RE.match(t)
            if m and 1 <= int(m.group(1)) <= MAX_RESULTS:
                index = int(m.group(1)) - 1
                if index < len(results):
                    self.show_project(user_id, results[index])
                else:
                    self.gateway.send_message(user_id, "That number is not in the list.")
                return True

        query = extract_search_query(text)
        if not query:
            return False

        found = self.memory.search_projects(query, MAX_RESULTS)
        if not found:
            self.gateway.send_message(user_id, "I found no projects matching that.")
            return True

        ctx.update({"query": query, "results": found, "page": 0})
        return self._send_page(user_id, ctx, 0)

    def _send_page(self, user_id: str, ctx: Dict, page: int) -> bool:
        results = ctx.get("results") or []
        start = page * PAGE_SIZE
        chunk = results[start:start + PAGE_SIZE]
        if not chunk:
            self.gateway.send_message(user_id, "No more projects to show.")
            return True

        lines = "\n".join(
            f"{start + i + 1}. {p.get('business_id') or 'PMO-N/A'} | {p.get('name')} | {p.get('status') or 'No status'}"
            for i, p in enumerate(chunk)
        )
        self.gateway.send_message(
            user_id,
            f"Here is what I found:\n{lines}\n\nReply with a number for details or \"next\" for more.",
        )
        ctx["page"] = page
        self._save(user_id, ctx)
        return True
