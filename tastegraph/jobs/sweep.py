"""Periodic cleanup of abandoned generation markers and expired rate limits.

Readers already clear what they find stale; the sweep keeps the store tidy
for scopes nobody polls.
"""

from datetime import timedelta

from tastegraph.config import config
from tastegraph.core.clock import utc_now
from tastegraph.core.orchestrator import sweep_stale_state
from tastegraph.logging import get_logger

logger = get_logger(__name__)


async def run_generation_sweep() -> dict[str, int]:
    """Run one sweep against the configured database.

    Returns:
        Counts of removed markers and rate-limit records
    """
    from tastegraph.storage import get_session_factory

    summary = await sweep_stale_state(
        get_session_factory(),
        now=utc_now(),
        stale_after=timedelta(minutes=config.job_stale_minutes),
    )
    if any(summary.values()):
        logger.info(f"Generation sweep: {summary}")
    return summary
