"""Cron: settle abandoned gateway jobs and stale credit reservations."""

from app.core.logging import get_logger
from app.db.init import init_db
from app.services import api_keys as api_keys_service
from app.services import credits as credits_service
from app.services.fal import get_fal_client
from app.services.gateway import reconcile_open_jobs

log = get_logger(__name__)


async def run_sweep_stale_reservations() -> dict[str, int]:
    """
    Queued gateway jobs are reconciled first so their holds commit when the
    provider finished; whatever is still held past its TTL is then refunded.
    Refunds that reached a revoked key go back to the key's owner last.
    """
    await init_db()
    client = get_fal_client()
    jobs = await reconcile_open_jobs(client) if client.configured else {}
    swept = await credits_service.sweep_stale()
    returned = await api_keys_service.return_revoked_balances()
    counts = {**{f"jobs_{k}": v for k, v in jobs.items()}, **swept, "revoked_keys_returned": returned}
    if any(counts.values()):
        log.info("sweep_stale_reservations", **counts)
    return counts
