import logging
import time
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

ASANA_BASE = "https://app.asana.com/api/1.0"

T = TypeVar("T")


class AsanaError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientError(AsanaError):
    """Timeouts and 5xx: worth retrying."""


class RateLimited(TransientError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class PermissionDenied(AsanaError):
    """403/404 on a single record: skip it, never retry."""


def call_with_backoff(
    fn: Callable[..., T],
    *args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """Call fn, retrying TransientError with exponential backoff.

    A server-provided Retry-After wins over the computed delay. After
    max_attempts total attempts the last error is re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(*args, **kwargs)
        except TransientError as e:
            if attempt >= max_attempts:
                logger.warning("giving up on %s after %d attempts: %s",
                               getattr(fn, "__name__", fn), attempt, e)
                raise
            delay = getattr(e, "retry_after", None)
            if delay is None:
                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.info("retry %d/%d for %s in %.1fs (%s)",
                        attempt, max_attempts - 1, getattr(fn, "__name__", fn), delay, e)
            sleep(delay)


def _retry_after(resp: requests.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class AsanaClient:
    def __init__(self, token: str, timeout: float = 30.0) -> None:
        self.token = (token or "").strip()
        if not self.token:
            raise RuntimeError("ASANA_PAT missing")
        self.timeout = timeout
        self.s = requests.Session()
        self.s.headers.update({
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        })

    def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        try:
            r = self.s.get(f"{ASANA_BASE}{path}", params=params, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"GET {path}: {e!r}") from e

        if r.status_code == 429:
            raise RateLimited(f"GET {path}: rate limited", retry_after=_retry_after(r))
        if r.status_code in (403, 404):
            raise PermissionDenied(f"GET {path}: {r.status_code}", status=r.status_code)
        if r.status_code >= 500:
            raise TransientError(f"GET {path}: {r.status_code}", status=r.status_code)
        if r.status_code >= 400:
            raise AsanaError(f"GET {path}: {r.status_code} {r.text[:200]}", status=r.status_code)
        return r.json()

    def list_workspaces(self) -> List[Dict]:
        return self._get("/workspaces", {"opt_fields": "name"}).get("data") or []

    def list_projects_page(self, workspace_gid: str, offset: Optional[str] = None,
                           limit: int = 100) -> Dict:
        """One page: {"data": [{gid, name, archived}], "next_page": {...} | None}."""
        params = {"limit": limit, "opt_fields": "name,archived"}
        if offset:
            params["offset"] = offset
        return self._get(f"/workspaces/{workspace_gid}/projects", params)

    def iter_projects(self, workspace_gid: str, max_attempts: int = 3,
                      sleep: Callable[[float], None] = time.sleep) -> Iterator[Dict]:
        offset = None
        while True:
            page = call_with_backoff(self.list_projects_page, workspace_gid, offset,
                                     max_attempts=max_attempts, sleep=sleep)
            for p in page.get("data") or []:
                yield p
            offset = (page.get("next_page") or {}).get("offset")
            if not offset:
                break

    def get_project(self, project_gid: str) -> Dict:
        fields = ",".join([
            "name",
            "archived",
            "due_on",
            "due_date",
            "custom_fields.name",
            "custom_fields.display_value",
            "current_status_update.text",
            "current_status_update.created_at",
        ])
        return self._get(f"/projects/{project_gid}", {"opt_fields": fields}).get("data") or {}

    def get_task_counts(self, project_gid: str) -> Dict:
        return self._get(
            f"/projects/{project_gid}/task_counts",
            {"opt_fields": "num_tasks,num_incomplete_tasks"},
        ).get("data") or {}
