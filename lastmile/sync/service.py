"""Engine façade: the operations exposed to the API, webhooks and jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lastmile import metrics
from lastmile.assign.coordinator import OUTCOME_CONFLICT, AssignmentCoordinator
from lastmile.config import Settings, settings as default_settings
from lastmile.db.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_NEEDS_RECONNECT,
    CachedShipment,
    Driver,
    DriverAssignment,
    MarketplaceAccount,
)
from lastmile.detect.diagnostics import AlertDiagnostics, CleanupResult, DiagnosticReport
from lastmile.detect.problems import DetectionSummary, ProblemDetector, resolve_delivered_alerts
from lastmile.errors import (
    AccountNotFoundError,
    InvalidCode,
    LastMileError,
    MarketplaceError,
    NotFoundAcrossAccounts,
    NotFoundError,
    TokenExpiredNeedsReconnect,
)
from lastmile.logging_config import get_logger
from lastmile.marketplace.client import MarketplaceClient
from lastmile.sync.reconciler import CacheReconciler
from lastmile.sync.resolver import MultiAccountResolver, decode_scanned_code
from lastmile.sync.retention import RetentionResult, ShipmentRetention

logger = logging.getLogger(__name__)

SCAN_ASSIGNED = "assigned"
SCAN_RESCANNED = "rescanned"
SCAN_CONFLICT = "conflict"
SCAN_INVALID_CODE = "invalid_code"
SCAN_NOT_FOUND = "not_found"
SCAN_DRIVER_NOT_FOUND = "driver_not_found"

REFRESH_OK = "refreshed"
REFRESH_NOT_FOUND = "not_found"

HISTORY_OK = "ok"
HISTORY_NOT_FOUND = "not_found"

SYNC_COMPLETED = "completed"
SYNC_NEEDS_RECONNECT = "needs_reconnect"
SYNC_ERROR = "error"
SYNC_ACCOUNT_NOT_FOUND = "account_not_found"

DELIVERED = "delivered"


@dataclass
class ScanResult:
    """Outcome of a driver scan."""

    status: str
    message: str
    shipment_id: Optional[str] = None
    resolved_from: Optional[str] = None
    account_id: Optional[int] = None
    account_nickname: Optional[str] = None
    shipment_status: Optional[str] = None
    substatus: Optional[str] = None
    tracking_number: Optional[str] = None
    order_id: Optional[str] = None
    attempts: int = 0
    holder_driver_id: Optional[int] = None
    holder_name: Optional[str] = None
    holder_phone: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (SCAN_ASSIGNED, SCAN_RESCANNED)


@dataclass
class RefreshResult:
    status: str
    shipment_id: str
    message: str = ""
    account_id: Optional[int] = None
    previous_status: Optional[str] = None
    shipment_status: Optional[str] = None
    substatus: Optional[str] = None
    alerts_resolved: int = 0


@dataclass
class ShipmentEvent:
    date: Optional[str]
    status: Optional[str]
    substatus: Optional[str] = None
    description: Optional[str] = None
    location: Any = None

    @classmethod
    def from_api(cls, event: dict[str, Any]) -> "ShipmentEvent":
        return cls(
            date=event.get("date_created") or event.get("date"),
            status=event.get("status"),
            substatus=event.get("substatus") or None,
            description=event.get("status_detail") or event.get("description") or None,
            location=event.get("tracking_location") or None,
        )


@dataclass
class HistoryResult:
    status: str
    shipment_id: str
    account_id: Optional[int] = None
    events: list[ShipmentEvent] = field(default_factory=list)
    message: str = ""

    @property
    def total(self) -> int:
        return len(self.events)


@dataclass
class SyncResult:
    """Outcome of importing recent orders for one account."""

    account_id: int
    status: str
    orders_seen: int = 0
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    message: str = ""
    error_details: list[str] = field(default_factory=list)


def buyer_info(order: dict[str, Any]) -> dict[str, Any]:
    buyer = order.get("buyer") or {}
    address = (order.get("shipping") or {}).get("receiver_address") or {}
    name = f"{buyer.get('first_name') or ''} {buyer.get('last_name') or ''}".strip()
    return {
        "name": name or None,
        "nickname": buyer.get("nickname"),
        "city": (address.get("city") or {}).get("name"),
        "state": (address.get("state") or {}).get("name"),
    }


def logistic_type(shipment: dict[str, Any]) -> Optional[str]:
    return (shipment.get("logistic") or {}).get("type") or shipment.get("logistic_type")


async def candidate_accounts(db: AsyncSession, owner_id: str) -> list[MarketplaceAccount]:
    """Active accounts of an owner, most recently connected first."""
    result = await db.execute(
        select(MarketplaceAccount)
        .where(
            MarketplaceAccount.owner_id == owner_id,
            MarketplaceAccount.status == ACCOUNT_ACTIVE,
        )
        .order_by(MarketplaceAccount.connected_at.desc(), MarketplaceAccount.id.desc())
    )
    return list(result.scalars().all())


class SyncService:
    """
    Entry point for scans, refreshes, account syncs and alert maintenance.

    Expected business outcomes (unreadable code, unknown shipment, package
    held by someone else) come back as typed results; only system failures
    raise.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MarketplaceClient,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        per_account_delay: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings or default_settings
        self.clock = clock
        self.sleep = sleep
        self.per_account_delay = (
            per_account_delay if per_account_delay is not None else self.settings.per_account_delay_seconds
        )
        self.resolver = MultiAccountResolver(
            client, fallback_to_orders=self.settings.resolver_order_pack_fallback
        )

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def resolve_and_assign(self, owner_id: str, driver_id: int, scanned_code: str) -> ScanResult:
        """
        Decode a scanned label, find its account, cache it and bind it to the driver.

        Returns:
            ScanResult with status assigned, rescanned, conflict, invalid_code,
            not_found or driver_not_found
        """
        log = get_logger(__name__, owner_id=owner_id, driver_id=driver_id)
        try:
            decoded = decode_scanned_code(scanned_code)
        except InvalidCode:
            metrics.record_scan(SCAN_INVALID_CODE)
            log.info("Unreadable code from driver %s: %r", driver_id, (scanned_code or "")[:50])
            return ScanResult(
                status=SCAN_INVALID_CODE,
                message="Unreadable code, scan the label again",
            )

        async with self.session_factory() as db:
            driver = await self._get_driver(db, owner_id, driver_id)
            if driver is None:
                return ScanResult(
                    status=SCAN_DRIVER_NOT_FOUND,
                    message=f"Driver {driver_id} not found",
                    shipment_id=decoded.shipment_id,
                )

            accounts = await candidate_accounts(db, owner_id)
            try:
                resolution = await self.resolver.resolve_decoded(decoded, accounts)
            except NotFoundAcrossAccounts as e:
                metrics.record_scan(SCAN_NOT_FOUND)
                log.info("Shipment %s not found in %d account(s)", e.shipment_id, e.attempted)
                return ScanResult(
                    status=SCAN_NOT_FOUND,
                    message=str(e),
                    shipment_id=decoded.shipment_id,
                    resolved_from=decoded.strategy,
                    attempts=e.attempted,
                )

            account = resolution.account
            cached = await CacheReconciler(db, self.clock).reconcile(
                resolution.shipment_id,
                resolution.payload,
                account.id,
                owner_id,
                extra=resolution.extra,
                source="scan",
            )

            # A lost insert race rolls the session back and expires every
            # loaded instance, so read what the result needs first
            driver_name = driver.name
            result = ScanResult(
                status="",
                message="",
                shipment_id=resolution.shipment_id,
                resolved_from=resolution.resolved_from,
                account_id=account.id,
                account_nickname=account.nickname,
                shipment_status=cached.status,
                substatus=cached.substatus,
                tracking_number=cached.tracking_number,
                order_id=cached.order_id,
                attempts=resolution.attempts,
            )

            outcome = await AssignmentCoordinator(db, self.clock).assign(
                driver_id,
                resolution.shipment_id,
                owner_id,
                account_id=result.account_id,
                scanned_code=scanned_code,
                resolved_from=resolution.resolved_from,
            )

        result.status = outcome.outcome
        log.bind(shipment_id=result.shipment_id, account_id=result.account_id).info(
            "Scan by driver %s: %s", driver_id, outcome.outcome
        )
        if outcome.outcome == OUTCOME_CONFLICT:
            conflict = outcome.conflict
            result.message = str(conflict)
            result.holder_driver_id = conflict.holder_driver_id
            result.holder_name = conflict.holder_name
            result.holder_phone = conflict.holder_phone
        elif outcome.outcome == SCAN_RESCANNED:
            result.message = f"Package {resolution.shipment_id} already with this driver, scan time updated"
        else:
            result.message = f"Package {resolution.shipment_id} assigned to {driver_name}"
        return result

    async def mark_returned(self, owner_id: str, shipment_id: str) -> Optional[DriverAssignment]:
        async with self.session_factory() as db:
            return await AssignmentCoordinator(db, self.clock).mark_returned(shipment_id, owner_id)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_shipment(
        self, owner_id: str, shipment_id: str, account_hint: Optional[int] = None
    ) -> RefreshResult:
        """
        Re-fetch one shipment and merge it into the cache.

        Accounts are tried in order: the hint, the account that cached the
        shipment, then every other active account of the owner.
        """
        shipment_id = str(shipment_id)
        async with self.session_factory() as db:
            reconciler = CacheReconciler(db, self.clock)
            current = await reconciler.get(shipment_id, owner_id=owner_id)
            previous_status = current.status if current else None
            ordered = await self._accounts_for(db, owner_id, current, account_hint)

            try:
                resolution = await self.resolver.resolve_id(shipment_id, ordered)
            except NotFoundAcrossAccounts as e:
                return RefreshResult(
                    status=REFRESH_NOT_FOUND,
                    shipment_id=shipment_id,
                    message=str(e),
                    previous_status=previous_status,
                )

            cached = await reconciler.reconcile(
                shipment_id,
                resolution.payload,
                resolution.account.id,
                owner_id,
                source="refresh",
            )
            resolved = 0
            if cached.status == DELIVERED:
                resolved = await resolve_delivered_alerts(db, shipment_id, self.clock())

        return RefreshResult(
            status=REFRESH_OK,
            shipment_id=shipment_id,
            account_id=resolution.account.id,
            previous_status=previous_status,
            shipment_status=cached.status,
            substatus=cached.substatus,
            alerts_resolved=resolved,
        )

    async def shipment_history(
        self, owner_id: str, shipment_id: str, account_hint: Optional[int] = None
    ) -> HistoryResult:
        """
        Status events of a shipment, from the first account that knows it.

        Accounts are tried in the same order as ``refresh_shipment``. Nothing
        is cached.
        """
        shipment_id = str(shipment_id)
        async with self.session_factory() as db:
            current = await CacheReconciler(db, self.clock).get(shipment_id, owner_id=owner_id)
            ordered = await self._accounts_for(db, owner_id, current, account_hint)

        for account in ordered:
            try:
                events = await self.client.get_shipment_history(owner_id, account.id, shipment_id)
            except NotFoundError:
                continue
            except LastMileError as e:
                logger.warning(
                    "History of shipment %s from account %s failed: %s", shipment_id, account.id, e
                )
                continue
            return HistoryResult(
                status=HISTORY_OK,
                shipment_id=shipment_id,
                account_id=account.id,
                events=[ShipmentEvent.from_api(event) for event in events],
            )

        return HistoryResult(
            status=HISTORY_NOT_FOUND,
            shipment_id=shipment_id,
            message=str(NotFoundAcrossAccounts(shipment_id, len(ordered))),
        )

    async def _accounts_for(
        self,
        db: AsyncSession,
        owner_id: str,
        current: Optional[CachedShipment],
        account_hint: Optional[int],
    ) -> list[MarketplaceAccount]:
        """Candidate accounts: the hint, the caching account, then the rest."""
        accounts = await candidate_accounts(db, owner_id)
        preferred = [account_hint, current.account_id if current else None]
        ordered: list[MarketplaceAccount] = []
        for account_id in preferred:
            for account in accounts:
                if account.id == account_id and account not in ordered:
                    ordered.append(account)
        ordered += [a for a in accounts if a not in ordered]
        return ordered

    async def fetch_and_reconcile(
        self,
        account: MarketplaceAccount,
        shipment_id: str,
        extra: Optional[dict[str, Any]] = None,
        source: str = "refresh",
        payload: Optional[dict[str, Any]] = None,
        self_service_only: bool = False,
    ) -> Optional[CachedShipment]:
        """
        Fetch a shipment from one known account and cache it.

        With ``self_service_only`` other logistic types are ignored and
        ``None`` is returned. Marketplace errors propagate to the caller.
        """
        if payload is None:
            payload = await self.client.get_shipment(account.owner_id, account.id, shipment_id)
        if self_service_only and logistic_type(payload) != self.settings.sync_logistic_type:
            logger.debug(
                "Shipment %s ignored (logistic type %s)", shipment_id, logistic_type(payload)
            )
            return None

        async with self.session_factory() as db:
            cached = await CacheReconciler(db, self.clock).reconcile(
                shipment_id, payload, account.id, account.owner_id, extra=extra, source=source
            )
            if cached.status == DELIVERED:
                await resolve_delivered_alerts(db, cached.shipment_id, self.clock())
        return cached

    # ------------------------------------------------------------------
    # Account sync
    # ------------------------------------------------------------------

    async def sync_account(
        self, owner_id: str, account_id: int, since: Optional[datetime] = None
    ) -> SyncResult:
        """
        Import recent paid orders of an account into the shipment cache.

        Only self-service shipments are kept. A rejected refresh token stops
        this account only and is reported as ``needs_reconnect``.
        """
        result = SyncResult(account_id=account_id, status=SYNC_COMPLETED)
        log = get_logger(__name__, account_id=account_id, owner_id=owner_id)

        async with self.session_factory() as db:
            account = (
                await db.execute(
                    select(MarketplaceAccount).where(
                        MarketplaceAccount.id == account_id,
                        MarketplaceAccount.owner_id == owner_id,
                    )
                )
            ).scalar_one_or_none()

        if account is None:
            result.status = SYNC_ACCOUNT_NOT_FOUND
            result.message = str(AccountNotFoundError(owner_id, account_id))
            return result
        if account.status == ACCOUNT_NEEDS_RECONNECT:
            result.status = SYNC_NEEDS_RECONNECT
            result.message = str(TokenExpiredNeedsReconnect(account_id))
            return result

        date_from = since.strftime("%Y-%m-%dT%H:%M:%S.000-00:00") if since else None
        page_size = self.settings.sync_page_size
        cap = self.settings.sync_max_orders_per_account

        try:
            offset = 0
            while offset < cap:
                page = await self.client.search_orders(
                    owner_id,
                    account_id,
                    account.external_user_id,
                    offset=offset,
                    limit=page_size,
                    date_from=date_from,
                )
                orders = (page or {}).get("results") or []
                for summary in orders[: cap - offset]:
                    result.orders_seen += 1
                    await self._import_order(account, summary, result)

                total = ((page or {}).get("paging") or {}).get("total")
                offset += page_size
                if len(orders) < page_size or (total is not None and offset >= total):
                    break
        except TokenExpiredNeedsReconnect as e:
            result.status = SYNC_NEEDS_RECONNECT
            result.message = str(e)
            log.warning("Sync of account %s stopped: %s", account_id, e)
            return result
        except MarketplaceError as e:
            result.status = SYNC_ERROR
            result.message = str(e)
            log.error("Sync of account %s failed: %s", account_id, e)
            return result

        result.message = (
            f"{result.imported} shipment(s) imported, {result.skipped} skipped, {result.errors} error(s)"
        )
        log.info("Account %s synced: %s", account_id, result.message)
        return result

    async def _import_order(
        self, account: MarketplaceAccount, summary: dict[str, Any], result: SyncResult
    ) -> None:
        order_id = summary.get("id")
        try:
            order = await self.client.get_order(account.owner_id, account.id, order_id)
            await self.sleep(self.per_account_delay)

            shipment_id = (order.get("shipping") or {}).get("id")
            if not shipment_id:
                result.skipped += 1
                return

            shipment = await self.client.get_shipment(account.owner_id, account.id, shipment_id)
            await self.sleep(self.per_account_delay)
            shipment["buyer_info"] = buyer_info(order)

            cached = await self.fetch_and_reconcile(
                account,
                str(shipment_id),
                extra={"order_id": order.get("id"), "pack_id": order.get("pack_id")},
                source="sync",
                payload=shipment,
                self_service_only=True,
            )
            if cached is None:
                result.skipped += 1
            else:
                result.imported += 1
        except TokenExpiredNeedsReconnect:
            raise
        except LastMileError as e:
            result.errors += 1
            result.error_details.append(f"order {order_id}: {e}")
            logger.warning("Order %s of account %s failed: %s", order_id, account.id, e)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def check_for_problems(self) -> DetectionSummary:
        async with self.session_factory() as db:
            return await ProblemDetector(db, self.clock, self.settings).run()

    async def diagnose(self) -> DiagnosticReport:
        async with self.session_factory() as db:
            return await AlertDiagnostics(db, self.clock, self.settings).diagnose()

    async def cleanup(self) -> CleanupResult:
        async with self.session_factory() as db:
            return await AlertDiagnostics(db, self.clock, self.settings).cleanup()

    async def cleanup_old_shipments(
        self,
        owner_id: Optional[str] = None,
        delete_after_days: Optional[int] = None,
        dry_run: bool = False,
    ) -> RetentionResult:
        async with self.session_factory() as db:
            return await ShipmentRetention(db, self.clock, self.settings).run(
                owner_id=owner_id, delete_after_days=delete_after_days, dry_run=dry_run
            )

    async def _get_driver(self, db: AsyncSession, owner_id: str, driver_id: int) -> Optional[Driver]:
        result = await db.execute(
            select(Driver).where(
                Driver.id == driver_id,
                Driver.owner_id == owner_id,
                Driver.active.is_(True),
            )
        )
        return result.scalar_one_or_none()
