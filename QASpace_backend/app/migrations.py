import logging
from datetime import datetime

from sqlalchemy import text

logger = logging.getLogger("qaspace.migrations")


async def ensure_migrations_table(conn):
    await conn.execute(text(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TEXT DEFAULT (datetime('now'))
        )
        """
    ))


async def applied_migrations(conn) -> set[str]:
    result = await conn.execute(text("SELECT name FROM schema_migrations"))
    return {name for (name,) in result}


async def mark_migration(conn, name: str):
    await conn.execute(
        text("INSERT INTO schema_migrations(name, applied_at) VALUES (:name, :applied_at)"),
        {"name": name, "applied_at": datetime.utcnow().isoformat()},
    )


async def column_exists(conn, table: str, column: str) -> bool:
    result = await conn.execute(text(f"PRAGMA table_info({table})"))
    return any(row.get("name") == column for row in result.mappings())


async def index_exists(conn, name: str) -> bool:
    result = await conn.execute(
        text("SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = :name"), {"name": name}
    )
    return result.first() is not None


async def add_ai_hint_to_posts(conn):
    if await column_exists(conn, "posts", "ai_hint"):
        return
    await conn.execute(text("ALTER TABLE posts ADD COLUMN ai_hint TEXT"))


async def add_tutor_id_to_sessions(conn):
    if await column_exists(conn, "sessions", "tutor_id"):
        return
    await conn.execute(text("ALTER TABLE sessions ADD COLUMN tutor_id INTEGER"))
    # backfill archives written before the column existed
    await conn.execute(text(
        "UPDATE sessions SET tutor_id = (SELECT tutor_id FROM spaces WHERE spaces.id = sessions.space_id)"
    ))


async def add_sweep_index_to_spaces(conn):
    if await index_exists(conn, "ix_spaces_status_end_time"):
        return
    await conn.execute(text("CREATE INDEX ix_spaces_status_end_time ON spaces (status, end_time)"))


MIGRATIONS = [
    ("202410_add_ai_hint_to_posts", add_ai_hint_to_posts),
    ("202410_add_tutor_id_to_sessions", add_tutor_id_to_sessions),
    ("202411_add_sweep_index_to_spaces", add_sweep_index_to_spaces),
]


async def run_migrations(conn):
    await ensure_migrations_table(conn)
    done = await applied_migrations(conn)
    for name, handler in MIGRATIONS:
        if name in done:
            continue
        await handler(conn)
        await mark_migration(conn, name)
        logger.info("applied migration %s", name)
