"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from models.integration import Integration
from models.oauth_state import OAuthState
from models.data_source import DataSource
from models.integration_record import IntegrationRecord
from models.sync_run import SyncRun

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Integration",
    "OAuthState",
    "DataSource",
    "IntegrationRecord",
    "SyncRun",
]
