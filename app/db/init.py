import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models import (
    ApiKey,
    AuditLog,
    CreditTransaction,
    CustomAgent,
    FailedJob,
    GatewayJob,
    Payment,
    User,
)

log = get_logger(__name__)

DOCUMENT_MODELS = [
    User,
    ApiKey,
    CreditTransaction,
    Payment,
    CustomAgent,
    GatewayJob,
    AuditLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Plain mongodb:// in CI stays unencrypted."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client(server_selection_timeout_ms: int | None = None) -> AsyncIOMotorClient:
    global _client
    if _client is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        if server_selection_timeout_ms is not None:
            kwargs["serverSelectionTimeoutMS"] = server_selection_timeout_ms
        _client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    return _client


async def init_db(server_selection_timeout_ms: int | None = None) -> None:
    settings = get_settings()
    client = get_client(server_selection_timeout_ms)
    await init_beanie(database=client[settings.mongodb_db_name], document_models=DOCUMENT_MODELS)
    log.info("db_initialized", db=settings.mongodb_db_name, models=len(DOCUMENT_MODELS))


def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
