"""Background scheduler - the only place that decides when campaigns are dispatched"""
import asyncio
import logging
from typing import Dict, Set

from mailcast.core.config import Settings
from mailcast.core.logging import scheduler_logger
from mailcast.core.metrics import scheduler_campaigns_promoted_counter, scheduler_runs_counter
from mailcast.db import campaign_store
from mailcast.services.dispatch_service import CampaignDispatcher

logger = logging.getLogger(__name__)


class DispatchScheduler:
    """Periodic promotion of due campaigns plus one-shot dispatch after confirmation"""

    def __init__(self, session_factory, dispatcher: CampaignDispatcher, config: Settings):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.config = config
        self._tasks: Set[asyncio.Task] = set()

    def dispatch_now(self, campaign_id: str) -> asyncio.Task:
        """Start a dispatch run in the background of the running event loop"""
        task = asyncio.get_running_loop().create_task(self.dispatcher.run(campaign_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        scheduler_logger.info(f"Dispatch started for campaign {campaign_id}")
        return task

    async def drain(self):
        """Wait for every one-shot dispatch started so far"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def process_scheduled_campaigns(self) -> Dict[str, int]:
        """Promote due scheduled campaigns and start their dispatch, together
        with any running campaign whose dispatch was never started or was abandoned.

        Runs are started in the background and not awaited, so a long campaign
        never holds up the next tick. Safe under overlapping ticks: promotion and
        the dispatch claim are both conditional updates, so each campaign is run
        by exactly one caller.
        """
        with self.session_factory() as db:
            promoted = campaign_store.promote_due_campaigns(db)
            unclaimed = campaign_store.find_unclaimed_running_campaigns(
                db, self.config.CAMPAIGN_DISPATCH_CLAIM_TIMEOUT_SECONDS
            )

        resumed = [campaign_id for campaign_id in unclaimed if campaign_id not in promoted]
        if promoted:
            scheduler_campaigns_promoted_counter.inc(len(promoted))
            scheduler_logger.info(f"Promoted {len(promoted)} scheduled campaign(s): {', '.join(promoted)}")
        if resumed:
            scheduler_logger.info(f"Resuming {len(resumed)} running campaign(s): {', '.join(resumed)}")

        for campaign_id in promoted + resumed:
            self.dispatch_now(campaign_id)

        return {"count": len(promoted), "resumed": len(resumed)}

    async def scheduler_task(self):
        """Background loop; one tick every SCHEDULER_INTERVAL_SECONDS"""
        scheduler_logger.info(f"Scheduler started (interval {self.config.SCHEDULER_INTERVAL_SECONDS}s)")
        while True:
            await asyncio.sleep(self.config.SCHEDULER_INTERVAL_SECONDS)
            try:
                result = await self.process_scheduled_campaigns()
                scheduler_runs_counter.labels(status="success").inc()
                if result["count"] or result["resumed"]:
                    logger.debug(f"Scheduler tick: {result}")
            except Exception as e:
                scheduler_runs_counter.labels(status="failed").inc()
                logger.error(f"Error in scheduler task: {e}", exc_info=True)
