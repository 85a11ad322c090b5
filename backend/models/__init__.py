"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_engine
from models.integration import Integration
from models.entity_mapping import EntityMapping
from models.enrichment_record import EnrichmentRecord
from models.webhook_subscription import WebhookSubscription
from models.sync_process import SyncProcess

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_engine",
    "Integration",
    "EntityMapping",
    "EnrichmentRecord",
    "WebhookSubscription",
    "SyncProcess",
]
