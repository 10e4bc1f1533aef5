"""Background sync jobs."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lastmile import metrics
from lastmile.config import settings
from lastmile.db.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_NEEDS_RECONNECT,
    CachedShipment,
    MarketplaceAccount,
    SyncRun,
)
from lastmile.db.session import AsyncSessionLocal
from lastmile.errors import LastMileError, TokenExpiredNeedsReconnect
from lastmile.logging_config import get_logger
from lastmile.marketplace.client import MarketplaceClient, RetryPolicy
from lastmile.marketplace.tokens import TokenManager
from lastmile.sync.service import SYNC_COMPLETED, SyncService
from lastmile.sync.webhooks import WebhookDeduper, WebhookProcessor

logger = logging.getLogger(__name__)

JOB_SHIPMENT_REFRESH = "shipment_refresh"
JOB_ACCOUNT_SYNC = "account_sync"
JOB_TOKEN_REFRESH = "token_refresh"
JOB_PROBLEM_CHECK = "problem_check"
JOB_ALERT_CLEANUP = "alert_cleanup"
JOB_SHIPMENT_RETENTION = "shipment_retention"


@dataclass
class JobSummary:
    """Aggregated outcome of one job run."""

    run_id: str
    job_type: str
    status: str = "running"
    total: int = 0
    success: int = 0
    errors: int = 0
    details: list[str] = field(default_factory=list)
    error_message: Optional[str] = None


class TaskRunner:
    """
    Runner for background tasks.

    Owns the shared HTTP client and the engine components built on it. Every
    job records a ``SyncRun`` row and isolates failures per item.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.http_client: httpx.AsyncClient | None = None
        self.tokens: TokenManager | None = None
        self.client: MarketplaceClient | None = None
        self.service: SyncService | None = None
        self.deduper: WebhookDeduper | None = None
        self.webhooks: WebhookProcessor | None = None
        self.sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def initialize(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        dedupe: bool = True,
    ):
        """Build the engine components."""
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0)
        )
        if sleep is not None:
            self.sleep = sleep

        self.tokens = TokenManager(self.session_factory, self.http_client)
        self.client = MarketplaceClient(self.tokens, self.http_client, policy=policy)
        self.service = SyncService(self.session_factory, self.client, sleep=self.sleep)
        if dedupe and settings.redis_url:
            self.deduper = WebhookDeduper(settings.redis_url)
        self.webhooks = WebhookProcessor(self.session_factory, self.service, self.deduper)
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        if self.deduper:
            await self.deduper.close()
            self.deduper = None
        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def refresh_active_shipments(self, trigger: str = "scheduled") -> JobSummary:
        """
        Re-fetch the least recently updated in-flight shipments.

        Shipments are grouped by account; accounts run in parallel (bounded)
        and calls for one account are serialized with a pacing delay.
        """
        return await self._run_job(JOB_SHIPMENT_REFRESH, trigger, self._refresh_active_shipments)

    async def sync_all_accounts(
        self, trigger: str = "scheduled", since: Optional[datetime] = None
    ) -> JobSummary:
        """Import recent orders for every active account."""
        if since is None:
            since = datetime.utcnow() - timedelta(hours=settings.sync_lookback_hours)

        async def run(summary: JobSummary):
            await self._sync_all_accounts(summary, since)

        return await self._run_job(JOB_ACCOUNT_SYNC, trigger, run)

    async def refresh_tokens(self, trigger: str = "scheduled") -> JobSummary:
        """Refresh every token expiring within the configured window."""
        return await self._run_job(JOB_TOKEN_REFRESH, trigger, self._refresh_tokens)

    async def check_for_problems(self, trigger: str = "scheduled") -> JobSummary:
        """Run the stuck/orphan detector."""
        return await self._run_job(JOB_PROBLEM_CHECK, trigger, self._check_for_problems)

    async def cleanup_alerts(self, trigger: str = "scheduled") -> JobSummary:
        """Repair orphaned, duplicated and stale alerts."""
        return await self._run_job(JOB_ALERT_CLEANUP, trigger, self._cleanup_alerts)

    async def cleanup_old_shipments(self, trigger: str = "scheduled") -> JobSummary:
        """Slim and expire finished shipments, drop old scan logs."""
        return await self._run_job(JOB_SHIPMENT_RETENTION, trigger, self._cleanup_old_shipments)

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def _refresh_active_shipments(self, summary: JobSummary):
        async with self.session_factory() as db:
            result = await db.execute(
                select(CachedShipment.shipment_id, CachedShipment.account_id)
                .join(MarketplaceAccount, MarketplaceAccount.id == CachedShipment.account_id)
                .where(
                    CachedShipment.status.in_(settings.refresh_active_statuses),
                    MarketplaceAccount.status == ACCOUNT_ACTIVE,
                )
                .order_by(CachedShipment.last_update_at.asc())
                .limit(settings.refresh_batch_size)
            )
            rows = [(row[0], row[1]) for row in result.all()]

            by_account: dict[int, list[str]] = {}
            for shipment_id, account_id in rows:
                by_account.setdefault(account_id, []).append(shipment_id)

            accounts = {}
            if by_account:
                account_rows = await db.execute(
                    select(MarketplaceAccount).where(MarketplaceAccount.id.in_(list(by_account)))
                )
                accounts = {a.id: a for a in account_rows.scalars().all()}

        summary.total = len(rows)
        if not rows:
            logger.info("No active shipments to refresh")
            return

        logger.info("Refreshing %d shipment(s) across %d account(s)", len(rows), len(by_account))
        semaphore = asyncio.Semaphore(settings.sync_max_concurrent_accounts)

        async def refresh_account(account: MarketplaceAccount, shipment_ids: list[str]) -> tuple[int, int]:
            success = errors = 0
            async with semaphore:
                for index, shipment_id in enumerate(shipment_ids):
                    try:
                        await self.service.fetch_and_reconcile(account, shipment_id, source="job")
                        success += 1
                    except TokenExpiredNeedsReconnect as e:
                        # Nothing else will work for this account
                        remaining = len(shipment_ids) - index
                        errors += remaining
                        summary.details.append(f"account {account.id}: {e}")
                        logger.warning("Stopping refresh for account %s: %s", account.id, e)
                        break
                    except (LastMileError, SQLAlchemyError) as e:
                        errors += 1
                        summary.details.append(f"shipment {shipment_id}: {e}")
                        logger.warning("Refresh of shipment %s failed: %s", shipment_id, e)
                    await self.sleep(self.service.per_account_delay)
            return success, errors

        batches = [
            (accounts[account_id], shipment_ids)
            for account_id, shipment_ids in by_account.items()
            if account_id in accounts
        ]
        results = await asyncio.gather(
            *(refresh_account(account, shipment_ids) for account, shipment_ids in batches),
            return_exceptions=True,
        )
        for (account, shipment_ids), result in zip(batches, results):
            if isinstance(result, Exception):
                # Unexpected failure: count the whole account batch as failed
                logger.error("Refresh for account %s aborted: %s", account.id, result, exc_info=result)
                summary.errors += len(shipment_ids)
                summary.details.append(f"account {account.id}: {result}")
                continue
            summary.success += result[0]
            summary.errors += result[1]

    async def _sync_all_accounts(self, summary: JobSummary, since: Optional[datetime]):
        async with self.session_factory() as db:
            result = await db.execute(
                select(MarketplaceAccount.id, MarketplaceAccount.owner_id)
                .where(MarketplaceAccount.status == ACCOUNT_ACTIVE)
                .order_by(MarketplaceAccount.id)
            )
            accounts = [(row[0], row[1]) for row in result.all()]

        summary.total = len(accounts)
        if not accounts:
            logger.info("No active accounts to sync")
            return

        semaphore = asyncio.Semaphore(settings.sync_max_concurrent_accounts)

        async def sync_one(account_id: int, owner_id: str):
            async with semaphore:
                return await self.service.sync_account(owner_id, account_id, since)

        results = await asyncio.gather(*(sync_one(a, o) for a, o in accounts), return_exceptions=True)
        imported = 0
        for (account_id, _owner_id), result in zip(accounts, results):
            if isinstance(result, Exception):
                logger.error("Sync of account %s aborted: %s", account_id, result, exc_info=result)
                summary.errors += 1
                summary.details.append(f"account {account_id}: {result}")
            elif result.status == SYNC_COMPLETED:
                summary.success += 1
                imported += result.imported
            else:
                summary.errors += 1
                summary.details.append(f"account {result.account_id}: {result.message}")
        logger.info("Account sync imported %d shipment(s) from %d account(s)", imported, len(accounts))

    async def _refresh_tokens(self, summary: JobSummary):
        results = await self.tokens.refresh_expiring()
        summary.total = len(results)
        summary.success = sum(1 for r in results if r.success)
        summary.errors = summary.total - summary.success
        summary.details = [f"account {r.account_id}: {r.error}" for r in results if not r.success]

        async with self.session_factory() as db:
            flagged = (
                await db.execute(
                    select(func.count(MarketplaceAccount.id)).where(
                        MarketplaceAccount.status == ACCOUNT_NEEDS_RECONNECT
                    )
                )
            ).scalar_one()
        metrics.accounts_needing_reconnect.set(flagged)

    async def _check_for_problems(self, summary: JobSummary):
        detection = await self.service.check_for_problems()
        summary.total = sum(detection.candidates.values())
        summary.success = detection.total_created
        summary.errors = detection.errors

    async def _cleanup_alerts(self, summary: JobSummary):
        cleanup = await self.service.cleanup()
        summary.total = cleanup.total_cleaned
        summary.success = cleanup.total_cleaned

    async def _cleanup_old_shipments(self, summary: JobSummary):
        retention = await self.service.cleanup_old_shipments()
        summary.total = retention.total
        summary.success = retention.total

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    async def _run_job(
        self,
        job_type: str,
        trigger: str,
        body: Callable[[JobSummary], Awaitable[None]],
    ) -> JobSummary:
        summary = JobSummary(run_id=uuid4().hex, job_type=job_type)
        log = get_logger(__name__, job_type=job_type, run_id=summary.run_id)
        log.info("Starting %s (trigger: %s, run_id: %s...)", job_type, trigger, summary.run_id[:16])

        sync_run_id: Optional[int] = None
        async with self.session_factory() as db:
            sync_run = SyncRun(
                run_id=summary.run_id,
                job_type=job_type,
                trigger=trigger,
                status="running",
                started_at=datetime.utcnow(),
            )
            db.add(sync_run)
            await db.commit()
            await db.refresh(sync_run)
            sync_run_id = sync_run.id

        try:
            await body(summary)
            summary.status = "completed"
            if summary.details:
                summary.error_message = "\n".join(summary.details[:5])
        except Exception as exc:
            log.error("%s failed: %s", job_type, exc, exc_info=True)
            summary.status = "failed"
            summary.error_message = str(exc)[:500]

        async with self.session_factory() as db:
            sync_run = await db.get(SyncRun, sync_run_id)
            if sync_run:
                sync_run.status = summary.status
                sync_run.completed_at = datetime.utcnow()
                sync_run.total_items = summary.total
                sync_run.success_count = summary.success
                sync_run.error_count = summary.errors
                sync_run.error_message = summary.error_message
                await db.commit()

        metrics.record_job_run(job_type, summary.status, summary.success, summary.errors)
        log.info(
            "%s %s: %d item(s), %d succeeded, %d failed",
            job_type,
            summary.status,
            summary.total,
            summary.success,
            summary.errors,
        )
        return summary


# Global task runner instance
task_runner = TaskRunner()
