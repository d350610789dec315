"""SQLite schema management (code-first approach)."""

import logging

from src.core.db_client import DBClient


logger = logging.getLogger(__name__)


# Server-side tables, in creation order (parents before children)
TABLE_SCHEMAS: dict[str, str] = {
    "areas": """CREATE TABLE IF NOT EXISTS areas (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        code TEXT,
        parent_id TEXT REFERENCES areas(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    "area_users": """CREATE TABLE IF NOT EXISTS area_users (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        area_id TEXT NOT NULL REFERENCES areas(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(area_id, user_id)
    )""",
    "tasks": """CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        area_id TEXT REFERENCES areas(id) ON DELETE SET NULL,
        title TEXT NOT NULL,
        description TEXT,
        type TEXT NOT NULL DEFAULT 'scheduled'
            CHECK (type IN ('scheduled', 'corrective', 'preventive')),
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ('critical', 'high', 'medium', 'low')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in_progress', 'completed', 'cancelled')),
        assigned_to_id TEXT,
        created_by_id TEXT,
        due_date TEXT,
        scheduled_time TEXT,
        recurrence_rule TEXT,
        is_recurring INTEGER NOT NULL DEFAULT 0,
        source_task_id TEXT,
        recurrence_index INTEGER,
        has_checklist INTEGER NOT NULL DEFAULT 0,
        completed_at TEXT,
        completed_by_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(source_task_id, recurrence_index)
    )""",
    "checklist_items": """CREATE TABLE IF NOT EXISTS checklist_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        description TEXT NOT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'ok', 'problem')),
        completed_at TEXT,
        completed_by_id TEXT,
        problem_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    "task_completions": """CREATE TABLE IF NOT EXISTS task_completions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        offline_id TEXT,
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        checklist_item_id TEXT REFERENCES checklist_items(id) ON DELETE SET NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('ok', 'problem')),
        notes TEXT,
        photo_urls TEXT,
        completed_at TEXT NOT NULL,
        synced_at TEXT NOT NULL,
        UNIQUE(tenant_id, offline_id)
    )""",
    "problems": """CREATE TABLE IF NOT EXISTS problems (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        task_completion_id TEXT NOT NULL UNIQUE REFERENCES task_completions(id) ON DELETE CASCADE,
        reason_category TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'open'
            CHECK (status IN ('open', 'assigned', 'resolved')),
        corrective_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
        resolved_at TEXT,
        resolved_by_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
}

INDEXES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_areas_tenant ON areas (tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_area_users_user ON area_users (tenant_id, user_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_tenant_updated ON tasks (tenant_id, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_area ON tasks (area_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to ON tasks (assigned_to_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_source ON tasks (source_task_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_recurring ON tasks (tenant_id, is_recurring)",
    "CREATE INDEX IF NOT EXISTS idx_checklist_items_task ON checklist_items (task_id, sort_order)",
    "CREATE INDEX IF NOT EXISTS idx_task_completions_task ON task_completions (task_id)",
    "CREATE INDEX IF NOT EXISTS idx_task_completions_tenant_synced ON task_completions (tenant_id, synced_at)",
    "CREATE INDEX IF NOT EXISTS idx_problems_tenant ON problems (tenant_id, status)",
]

# Client-side offline queue tables
QUEUE_TABLE_SCHEMAS: dict[str, str] = {
    "pending_completions": """CREATE TABLE IF NOT EXISTS pending_completions (
        id TEXT PRIMARY KEY,
        offline_id TEXT NOT NULL UNIQUE,
        task_id TEXT NOT NULL,
        checklist_item_id TEXT,
        status TEXT NOT NULL,
        notes TEXT,
        problem_reason TEXT,
        problem_description TEXT,
        photo_urls TEXT,
        completed_at TEXT NOT NULL,
        synced INTEGER NOT NULL DEFAULT 0,
        retry_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        synced_at TEXT
    )""",
    "sync_state": """CREATE TABLE IF NOT EXISTS sync_state (
        id TEXT PRIMARY KEY,
        value TEXT
    )""",
}

QUEUE_INDEXES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_pending_completions_synced ON pending_completions (synced, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_pending_completions_retry ON pending_completions (synced, retry_count)",
]


def _build_script(tables: dict[str, str], indexes: list[str]) -> str:
    statements = [*tables.values(), *indexes]
    return ";\n".join(statements) + ";"


async def init_db(db: DBClient) -> None:
    """Create the server tables and indexes if they do not exist."""
    await db.executescript(_build_script(TABLE_SCHEMAS, INDEXES))
    logger.info("Database schema initialized", extra={"tables": list(TABLE_SCHEMAS)})


async def init_queue_schema(db: DBClient) -> None:
    """Create the offline queue tables on the client database."""
    await db.executescript(_build_script(QUEUE_TABLE_SCHEMAS, QUEUE_INDEXES))
    logger.info("Offline queue schema initialized", extra={"tables": list(QUEUE_TABLE_SCHEMAS)})
