import json
import sqlite3
import time
import unicodedata
from datetime import datetime, timezone
from typing import Dict, List, Optional

DEFAULT_DB_PATH = "pulse.db"

USER_FIELDS = ("name", "email", "timezone", "onboarded")

CACHE_FIELDS = (
    "gid",
    "name",
    "owner",
    "status",
    "business_id",
    "due_on",
    "last_update_text",
    "last_update_at",
    "progress",
    "pending_tasks",
    "total_tasks",
)


def utc_iso(dt: Optional[datetime] = None) -> str:
    """Fixed-width UTC ISO-8601 so string order == time order."""
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_text(text: str) -> str:
    """Lowercase and strip accents ("Gómez" -> "gomez")."""
    decomposed = unicodedata.normalize("NFD", (text or "").strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


class Memory:
    """SQLite-backed store for users, updates, conversation state and the project cache.

    One connection per call, so the object is safe to share between the
    Bolt listener threads and the scheduler threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self._connect()
        cur = conn.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY,
            name TEXT,
            email TEXT,
            timezone TEXT,
            onboarded INTEGER NOT NULL DEFAULT 0,
            cached_projects TEXT,
            projects_cached_at TEXT,
            created_at TEXT,
            updated_at TEXT
        )
        """)

        # sk = "UPDATE#<iso ts>", append-only
        cur.execute("""
        CREATE TABLE IF NOT EXISTS updates (
            project_gid TEXT NOT NULL,
            sk TEXT NOT NULL,
            project_name TEXT,
            user_id TEXT,
            status TEXT,
            advances TEXT,
            has_blockers INTEGER,
            blocker_description TEXT,
            timestamp TEXT NOT NULL,
            PRIMARY KEY (project_gid, sk)
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            user_id TEXT PRIMARY KEY,
            state TEXT NOT NULL,
            updated_at TEXT,
            expires_at REAL NOT NULL
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS project_cache (
            gid TEXT PRIMARY KEY,
            name TEXT,
            name_normalized TEXT,
            owner TEXT,
            owner_normalized TEXT,
            status TEXT,
            business_id TEXT,
            due_on TEXT,
            last_update_text TEXT,
            last_update_at TEXT,
            progress TEXT,
            pending_tasks INTEGER,
            total_tasks INTEGER,
            refreshed_at TEXT
        )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS ix_cache_business_id ON project_cache (business_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_cache_owner ON project_cache (owner_normalized)")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """)

        conn.commit()
        conn.close()

    # ---- users ----

    def get_user(self, user_id: str) -> Optional[Dict]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM users WHERE user_id=?", (user_id,)).fetchone()
        conn.close()
        return _user_from_row(row) if row else None

    def save_user(self, user: Dict) -> Dict:
        now = utc_iso()
        item = {
            "user_id": user["user_id"],
            "name": user.get("name"),
            "email": user.get("email"),
            "timezone": user.get("timezone"),
            "onboarded": bool(user.get("onboarded", False)),
            "cached_projects": None,
            "projects_cached_at": None,
            "created_at": now,
            "updated_at": now,
        }
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO users (user_id, name, email, timezone, onboarded, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (item["user_id"], item["name"], item["email"], item["timezone"],
             int(item["onboarded"]), now, now),
        )
        conn.commit()
        conn.close()
        return item

    def update_user(self, user_id: str, **fields):
        unknown = set(fields) - set(USER_FIELDS)
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if "onboarded" in fields:
            fields["onboarded"] = int(bool(fields["onboarded"]))

        assignments = ", ".join(f"{k}=?" for k in fields)
        values = list(fields.values()) + [utc_iso(), user_id]
        conn = self._connect()
        conn.execute(f"UPDATE users SET {assignments}, updated_at=? WHERE user_id=?", values)
        conn.commit()
        conn.close()

    def delete_user(self, user_id: str):
        conn = self._connect()
        conn.execute("DELETE FROM users WHERE user_id=?", (user_id,))
        conn.commit()
        conn.close()

    def get_all_onboarded_users(self) -> List[Dict]:
        conn = self._connect()
        rows = conn.execute("SELECT * FROM users WHERE onboarded=1").fetchall()
        conn.close()
        return [_user_from_row(r) for r in rows]

    def cache_user_projects(self, user_id: str, projects: List[Dict], now: Optional[datetime] = None):
        conn = self._connect()
        conn.execute(
            "UPDATE users SET cached_projects=?, projects_cached_at=? WHERE user_id=?",
            (json.dumps(projects), utc_iso(now), user_id),
        )
        conn.commit()
        conn.close()

    def get_cached_user_projects(self, user_id: str, max_age_seconds: float,
                                 now: Optional[datetime] = None) -> Optional[List[Dict]]:
        user = self.get_user(user_id)
        if not user or user["cached_projects"] is None or not user["projects_cached_at"]:
            return None
        now = now or datetime.now(timezone.utc)
        age = (now - parse_iso(user["projects_cached_at"])).total_seconds()
        if age >= max_age_seconds:
            return None
        return user["cached_projects"]

    # ---- project updates (append-only) ----

    def save_update(self, update: Dict, now: Optional[datetime] = None) -> Dict:
        timestamp = utc_iso(now)
        item = {
            "project_gid": update["project_gid"],
            "sk": f"UPDATE#{timestamp}",
            "project_name": update.get("project_name"),
            "user_id": update["user_id"],
            "status": update["status"],
            "advances": update.get("advances"),
            "has_blockers": bool(update.get("has_blockers")),
            "blocker_description": update.get("blocker_description"),
            "timestamp": timestamp,
        }
        conn = self._connect()
        conn.execute(
            "INSERT INTO updates VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (item["project_gid"], item["sk"], item["project_name"], item["user_id"],
             item["status"], item["advances"], int(item["has_blockers"]),
             item["blocker_description"], timestamp),
        )
        conn.commit()
        conn.close()
        return item

    def get_last_updates(self, project_gid: str, limit: int = 2) -> List[Dict]:
        """Most recent first."""
        conn = self._connect()
        rows = conn.execute(
            "SELECT * FROM updates WHERE project_gid=? ORDER BY sk DESC LIMIT ?",
            (project_gid, limit),
        ).fetchall()
        conn.close()
        out = []
        for r in rows:
            d = dict(r)
            d["has_blockers"] = bool(d["has_blockers"])
            out.append(d)
        return out

    def get_projects_updated_today(self, now: Optional[datetime] = None) -> List[str]:
        today = utc_iso(now)[:10]
        conn = self._connect()
        rows = conn.execute(
            "SELECT DISTINCT project_gid FROM updates WHERE sk LIKE ?",
            (f"UPDATE#{today}%",),
        ).fetchall()
        conn.close()
        return [r["project_gid"] for r in rows]

    # ---- conversation state (expires) ----

    def get_conversation_state(self, user_id: str, now: Optional[float] = None) -> Optional[Dict]:
        now = time.time() if now is None else now
        conn = self._connect()
        row = conn.execute(
            "SELECT state FROM conversations WHERE user_id=? AND expires_at>?",
            (user_id, now),
        ).fetchone()
        conn.close()
        return json.loads(row["state"]) if row else None

    def set_conversation_state(self, user_id: str, state: Dict, ttl_seconds: float,
                               now: Optional[float] = None):
        now = time.time() if now is None else now
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO conversations VALUES (?, ?, ?, ?)",
            (user_id, json.dumps(state), utc_iso(), now + ttl_seconds),
        )
        conn.commit()
        conn.close()

    def clear_conversation_state(self, user_id: str):
        conn = self._connect()
        conn.execute("DELETE FROM conversations WHERE user_id=?", (user_id,))
        conn.commit()
        conn.close()

    def get_active_conversation_states(self, now: Optional[float] = None) -> List[Dict]:
        now = time.time() if now is None else now
        conn = self._connect()
        # opportunistic cleanup of expired flows
        conn.execute("DELETE FROM conversations WHERE expires_at<=?", (now,))
        conn.commit()
        rows = conn.execute("SELECT state FROM conversations").fetchall()
        conn.close()
        return [json.loads(r["state"]) for r in rows]

    # ---- project cache ----

    def upsert_project_cache(self, project: Dict):
        """Full overwrite of the cached record."""
        values = [project.get(f) for f in CACHE_FIELDS]
        conn = self._connect()
        conn.execute(
            f"INSERT OR REPLACE INTO project_cache ({', '.join(CACHE_FIELDS)}, "
            "name_normalized, owner_normalized, refreshed_at) "
            f"VALUES ({', '.join('?' for _ in CACHE_FIELDS)}, ?, ?, ?)",
            values + [
                normalize_text(project.get("name") or ""),
                normalize_text(project.get("owner") or "") or None,
                utc_iso(),
            ],
        )
        conn.commit()
        conn.close()

    def delete_project_cache(self, gid: str) -> bool:
        conn = self._connect()
        cur = conn.execute("DELETE FROM project_cache WHERE gid=?", (gid,))
        conn.commit()
        conn.close()
        return cur.rowcount > 0

    def get_project_cache(self, gid: str) -> Optional[Dict]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM project_cache WHERE gid=?", (gid,)).fetchone()
        conn.close()
        return _cache_from_row(row) if row else None

    def get_project_by_business_id(self, business_id: str) -> Optional[Dict]:
        conn = self._connect()
        row = conn.execute(
            "SELECT * FROM project_cache WHERE upper(business_id)=? LIMIT 1",
            ((business_id or "").strip().upper(),),
        ).fetchone()
        conn.close()
        return _cache_from_row(row) if row else None

    def get_projects_by_owner_name(self, owner_name: str) -> List[Dict]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT * FROM project_cache WHERE owner_normalized=? ORDER BY name",
            (normalize_text(owner_name),),
        ).fetchall()
        conn.close()
        return [_cache_from_row(r) for r in rows]

    def search_projects(self, query: str, limit: int = 50) -> List[Dict]:
        needle = normalize_text(query)
        if not needle:
            return []
        conn = self._connect()
        rows = conn.execute(
            "SELECT * FROM project_cache WHERE instr(name_normalized, ?) > 0 ORDER BY name LIMIT ?",
            (needle, limit),
        ).fetchall()
        conn.close()
        return [_cache_from_row(r) for r in rows]

    def all_cached_projects(self) -> List[Dict]:
        conn = self._connect()
        rows = conn.execute("SELECT * FROM project_cache ORDER BY gid").fetchall()
        conn.close()
        return [_cache_from_row(r) for r in rows]

    # ---- generic kv ----

    def kv_get(self, key: str, default: str = "") -> str:
        conn = self._connect()
        row = conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        conn.close()
        return row["value"] if row else default

    def kv_set(self, key: str, value: str):
        conn = self._connect()
        conn.execute("INSERT OR REPLACE INTO kv VALUES (?, ?)", (key, value))
        conn.commit()
        conn.close()


def _user_from_row(row: sqlite3.Row) -> Dict:
    d = dict(row)
    d["onboarded"] = bool(d["onboarded"])
    d["cached_projects"] = json.loads(d["cached_projects"]) if d["cached_projects"] else None
    return d


def _cache_from_row(row: sqlite3.Row) -> Dict:
    return {f: row[f] for f in CACHE_FIELDS}
