"""Process-wide database manager for the coordinator service."""

from shared.database import DatabaseManager, PoolConfig

# Global database manager instance
_db_manager: DatabaseManager | None = None


def get_database_manager() -> DatabaseManager:
    """Get the global database manager instance"""
    if _db_manager is None:
        raise RuntimeError("Database manager not initialized")
    return _db_manager


def init_database_manager(database_url: str, *, ssl: bool = True) -> DatabaseManager:
    """Initialize the global database manager"""
    global _db_manager
    config = PoolConfig.for_service("coordinator", ssl="require" if ssl else False)
    _db_manager = DatabaseManager(database_url, config)
    return _db_manager
