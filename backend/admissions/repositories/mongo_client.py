"""MongoDB access: one lazily opened client shared by every repository

Unique indexes here are part of the engine's correctness, not only speed:
history (application_id, sequence) is the commit point of a transition,
the outbox idempotency_key makes enqueueing idempotent and the pointer
collection holds one active version per applicant category.
"""
from typing import Any, Dict, List, Optional, Tuple, Union
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

WORKFLOWS = "workflow_definitions"
WORKFLOW_VERSIONS = "workflow_definition_versions"
ACTIVE_POINTERS = "active_definition_pointers"
APPLICATION_STATES = "application_workflow_states"
HISTORY = "stage_history"
APPLICATION_LOCKS = "application_locks"
ACTION_OUTBOX = "action_outbox"

IndexKeys = Union[str, List[Tuple[str, int]]]

# collection -> [(keys, unique)]
INDEXES: Dict[str, List[Tuple[IndexKeys, bool]]] = {
    WORKFLOWS: [
        ("workflow_id", True),
        ("applicant_category", False),
        ("updated_at", False),
    ],
    WORKFLOW_VERSIONS: [
        ("workflow_version_id", True),
        ([("workflow_id", ASCENDING), ("version_number", DESCENDING)], True),
    ],
    ACTIVE_POINTERS: [
        ("applicant_category", True),
    ],
    APPLICATION_STATES: [
        ("application_id", True),
        ([("in_terminal_stage", ASCENDING), ("application_id", ASCENDING)], False),
    ],
    HISTORY: [
        ("history_id", True),
        ([("application_id", ASCENDING), ("sequence", ASCENDING)], True),
    ],
    APPLICATION_LOCKS: [
        ("application_id", True),
        ("locked_until", False),
    ],
    ACTION_OUTBOX: [
        ("action_id", True),
        ("idempotency_key", True),
        ([("status", ASCENDING), ("next_retry_at", ASCENDING)], False),
        ("application_id", False),
        ("locked_until", False),
    ],
}

_client: Optional[MongoClient] = None
_database: Optional[Database] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        client = MongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
        try:
            client.admin.command("ping")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
        _client = client
    return _client


def get_database() -> Database:
    global _database
    if _database is None:
        _database = get_client()[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    return get_database()[name]


def close_connection() -> None:
    global _client, _database
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _database = None


def create_indexes() -> None:
    """Create every index in INDEXES; safe to run on each startup"""
    db = get_database()
    for collection_name, indexes in INDEXES.items():
        collection = db[collection_name]
        for keys, unique in indexes:
            collection.create_index(keys, unique=unique)
    logger.info(f"MongoDB indexes ensured on {len(INDEXES)} collections")


def health_check() -> Dict[str, Any]:
    try:
        get_database().command("ping")
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {"status": "unhealthy", "database": settings.mongo_db, "error": str(e)}
    return {"status": "healthy", "database": settings.mongo_db, "connection": "ok"}
