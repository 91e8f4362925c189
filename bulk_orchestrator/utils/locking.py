from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

# Fixed 64-bit key shared by every orchestrator instance for the recovery leader lock.
RECOVERY_LEADER_LOCK_KEY = 73190482

async def try_advisory_lock(conn: AsyncConnection, key: int = RECOVERY_LEADER_LOCK_KEY) -> bool:
    """
    Attempts to take a Postgres session-level advisory lock and returns True if
    this connection holds it. The lock lives as long as the connection, so the
    holder keeps leadership until it disconnects. Re-entrant: asking again on
    the same connection returns True.

    Other dialects (SQLite in tests and single-node dev) have no advisory
    locks; there is only ever one instance there, so it is always the leader.
    """
    if conn.dialect.name != "postgresql":
        return True

    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    acquired = result.scalar() is True
    # Session-level lock survives the commit; don't sit idle in a transaction
    await conn.commit()
    return acquired
