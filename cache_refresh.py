"""Bulk refresh of the project cache.

Asana cannot filter projects by owner or status, so every non-archived
project needs its own detail call. Calls go out in fixed-size batches
(awaited as a whole, then a short pause) to stay under the rate limiter,
and the cycle stops starting new batches when the time budget runs low.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from asana_read import AsanaError, PermissionDenied, call_with_backoff
from memory import Memory

logger = logging.getLogger(__name__)

COMPLETED = "completed"


@dataclass
class FieldNames:
    owner: str = "Responsable Proyecto"
    status: str = "Estado"
    business_id: str = "PMO ID"
    progress: str = "% Avance"


@dataclass
class Fetched:
    project: Dict


@dataclass
class Skipped:
    gid: str
    reason: str


FetchResult = Union[Fetched, Skipped]


@dataclass
class RefreshSummary:
    total_seen: int = 0
    archived: int = 0
    fetched: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    truncated: bool = False
    elapsed: float = 0.0
    failures: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {
            "total_seen": self.total_seen,
            "archived": self.archived,
            "fetched": self.fetched,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
            "truncated": self.truncated,
            "elapsed": f"{round(self.elapsed)}s",
        }


def _field_value(custom_fields: List[Dict], name: str, contains: bool = False) -> Optional[str]:
    wanted = name.strip().lower()
    for cf in custom_fields or []:
        cf_name = (cf.get("name") or "").strip().lower()
        hit = wanted in cf_name if contains else cf_name == wanted
        if hit:
            value = (cf.get("display_value") or "").strip()
            return value or None
    return None


def extract_project(gid: str, name: str, detail: Dict, counts: Optional[Dict],
                    names: FieldNames) -> Dict:
    custom_fields = detail.get("custom_fields") or []
    business_id = _field_value(custom_fields, names.business_id, contains=True)
    status_update = detail.get("current_status_update") or {}
    counts = counts or {}

    pending = total = None
    if "num_tasks" in counts:
        total = counts.get("num_tasks")
        pending = counts.get("num_incomplete_tasks")

    return {
        "gid": gid,
        "name": detail.get("name") or name,
        "owner": _field_value(custom_fields, names.owner),
        "status": _field_value(custom_fields, names.status),
        "business_id": business_id.upper() if business_id else None,
        "due_on": detail.get("due_on") or detail.get("due_date"),
        "last_update_text": status_update.get("text"),
        "last_update_at": status_update.get("created_at"),
        "progress": _field_value(custom_fields, names.progress),
        "pending_tasks": pending,
        "total_tasks": total,
    }


def classify(project: Dict) -> str:
    """'deleted' | 'skipped' | 'updated' for one fetched project."""
    if (project.get("status") or "").strip().lower() == COMPLETED:
        return "deleted"
    if not project.get("owner") and not project.get("business_id"):
        return "skipped"
    return "updated"


class CacheRefresher:
    def __init__(
        self,
        asana,
        memory: Memory,
        *,
        batch_size: int = 15,
        batch_pause: float = 1.0,
        time_budget: float = 840.0,
        max_attempts: int = 3,
        fields: Optional[FieldNames] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.asana = asana
        self.memory = memory
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.time_budget = time_budget
        self.max_attempts = max_attempts
        self.fields = fields or FieldNames()
        self.clock = clock
        self.sleep = sleep

    def list_active_projects(self, summary: RefreshSummary) -> List[Dict]:
        """All non-archived projects across all workspaces. Listing errors fail the cycle."""
        active = []
        workspaces = call_with_backoff(self.asana.list_workspaces,
                                       max_attempts=self.max_attempts, sleep=self.sleep)
        for ws in workspaces:
            for p in self.asana.iter_projects(ws["gid"], max_attempts=self.max_attempts,
                                              sleep=self.sleep):
                if p.get("archived"):
                    summary.archived += 1
                    continue
                active.append(p)
        return active

    def fetch_one(self, project: Dict) -> FetchResult:
        gid = project["gid"]
        try:
            detail = call_with_backoff(self.asana.get_project, gid,
                                       max_attempts=self.max_attempts, sleep=self.sleep)
        except PermissionDenied as e:
            return Skipped(gid, f"denied: {e}")
        except AsanaError as e:
            return Skipped(gid, f"error: {e}")

        try:
            counts = call_with_backoff(self.asana.get_task_counts, gid,
                                       max_attempts=self.max_attempts, sleep=self.sleep)
        except AsanaError as e:
            logger.debug("task counts unavailable for %s: %s", gid, e)
            counts = None

        return Fetched(extract_project(gid, project.get("name") or "", detail, counts, self.fields))

    def apply(self, project: Dict, summary: RefreshSummary):
        kind = classify(project)
        if kind == "deleted":
            self.memory.delete_project_cache(project["gid"])
            summary.deleted += 1
        elif kind == "skipped":
            summary.skipped += 1
        else:
            self.memory.upsert_project_cache(project)
            summary.updated += 1

    def refresh_all(self) -> RefreshSummary:
        start = self.clock()
        summary = RefreshSummary()

        projects = self.list_active_projects(summary)
        summary.total_seen = len(projects)
        logger.info("[cache-refresh] %d active projects (%d archived)", len(projects), summary.archived)

        batches = [projects[i:i + self.batch_size] for i in range(0, len(projects), self.batch_size)]
        last_batch_seconds = 0.0

        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for n, batch in enumerate(batches):
                remaining = self.time_budget - (self.clock() - start)
                if remaining <= last_batch_seconds:
                    summary.truncated = True
                    logger.warning("[cache-refresh] time budget reached after %d/%d batches",
                                   n, len(batches))
                    break

                batch_start = self.clock()
                results = list(pool.map(self.fetch_one, batch))
                for result in results:
                    if isinstance(result, Skipped):
                        summary.failed += 1
                        summary.failures.append(f"{result.gid}: {result.reason}")
                        continue
                    summary.fetched += 1
                    self.apply(result.project, summary)
                last_batch_seconds = self.clock() - batch_start

                if n + 1 < len(batches) and self.batch_pause:
                    self.sleep(self.batch_pause)

        summary.elapsed = self.clock() - start
        logger.info("[cache-refresh] done %s", summary.as_dict())
        return summary
