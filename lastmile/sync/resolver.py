"""Resolve a scanned label to its shipment and owning marketplace account."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

from lastmile import metrics
from lastmile.db.models import MarketplaceAccount
from lastmile.errors import InvalidCode, LastMileError, NotFoundAcrossAccounts, NotFoundError
from lastmile.marketplace.client import MarketplaceClient

logger = logging.getLogger(__name__)

RESOLVED_JSON = "json_payload"
RESOLVED_URL = "url_pattern"
RESOLVED_NUMERIC = "numeric"
RESOLVED_ORDER = "order"
RESOLVED_PACK = "pack"

URL_PATTERNS = (
    re.compile(r"shipments?[/:=](\d+)", re.IGNORECASE),
    re.compile(r"shipment[_-]?id[=:/](\d+)", re.IGNORECASE),
    re.compile(r"envio[=:/](\d+)", re.IGNORECASE),
)
NUMERIC = re.compile(r"[0-9]+", re.ASCII)


@dataclass(frozen=True)
class DecodedCode:
    shipment_id: str
    strategy: str


@dataclass
class Resolution:
    """A shipment found in one of the candidate accounts."""

    shipment_id: str
    payload: dict[str, Any]
    account: MarketplaceAccount
    resolved_from: str
    attempts: int
    # Sticky values learned on the way, e.g. the order a pack resolved through
    extra: dict[str, Any] = field(default_factory=dict)


# shipment id, shipment payload, sticky extras
Found = Tuple[str, dict[str, Any], dict[str, Any]]


def decode_scanned_code(code: str) -> DecodedCode:
    """
    Extract a shipment id from a scanned label.

    Tries, in order: a QR JSON object with an ``id`` key, a URL-like pattern,
    then a purely numeric code.

    Raises:
        InvalidCode: Nothing recognizable in the code
    """
    text = (code or "").strip()
    if not text:
        raise InvalidCode(code or "")

    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("id") not in (None, ""):
            shipment_id = str(parsed["id"]).strip()
            if NUMERIC.fullmatch(shipment_id):
                return DecodedCode(shipment_id, RESOLVED_JSON)

    for pattern in URL_PATTERNS:
        match = pattern.search(text)
        if match:
            return DecodedCode(match.group(1), RESOLVED_URL)

    if NUMERIC.fullmatch(text):
        return DecodedCode(text, RESOLVED_NUMERIC)

    raise InvalidCode(code)


class MultiAccountResolver:
    """Asks candidate accounts in order until one of them owns the shipment."""

    def __init__(self, client: MarketplaceClient, fallback_to_orders: bool = True):
        self.client = client
        self.fallback_to_orders = fallback_to_orders

    async def resolve(
        self, scanned_code: str, accounts: Sequence[MarketplaceAccount]
    ) -> Resolution:
        """
        Find the account holding the scanned shipment.

        Args:
            scanned_code: Raw scanned text
            accounts: Candidate accounts, most recently connected first

        Raises:
            InvalidCode: Code could not be decoded (no account is called)
            NotFoundAcrossAccounts: No candidate returned the shipment
        """
        decoded = decode_scanned_code(scanned_code)
        return await self.resolve_decoded(decoded, accounts)

    async def resolve_decoded(
        self, decoded: DecodedCode, accounts: Sequence[MarketplaceAccount]
    ) -> Resolution:
        """
        Resolve a decoded code.

        A bare number that is not a shipment in any account is then tried as
        an order id and finally as a pack id, account by account.
        """
        try:
            return await self.resolve_id(decoded.shipment_id, accounts, decoded.strategy)
        except NotFoundAcrossAccounts:
            if not (self.fallback_to_orders and decoded.strategy == RESOLVED_NUMERIC):
                raise

        attempts = len(accounts)
        code = decoded.shipment_id
        for resolved_from, lookup in ((RESOLVED_ORDER, self._via_order), (RESOLVED_PACK, self._via_pack)):
            for account in accounts:
                attempts += 1
                try:
                    found = await lookup(account, code)
                except NotFoundError:
                    metrics.resolver_lookups_total.labels(result="not_found").inc()
                    continue
                except LastMileError as e:
                    metrics.resolver_lookups_total.labels(result="error").inc()
                    logger.warning(
                        "Looking up account %s for %s %s failed: %s", account.id, resolved_from, code, e
                    )
                    continue
                if found is None:
                    metrics.resolver_lookups_total.labels(result="empty").inc()
                    continue

                shipment_id, payload, extra = found
                metrics.resolver_lookups_total.labels(result="found").inc()
                logger.info(
                    "Code %s resolved as %s to shipment %s in account %s",
                    code, resolved_from, shipment_id, account.id,
                )
                return Resolution(
                    shipment_id=shipment_id,
                    payload=payload,
                    account=account,
                    resolved_from=resolved_from,
                    attempts=attempts,
                    extra=extra,
                )

        raise NotFoundAcrossAccounts(code, len(accounts))

    async def resolve_id(
        self,
        shipment_id: str,
        accounts: Sequence[MarketplaceAccount],
        resolved_from: Optional[str] = None,
    ) -> Resolution:
        """Ask each account for ``shipment_id``; one call per account, early exit."""
        attempts = 0
        for account in accounts:
            attempts += 1
            try:
                payload = await self.client.get_shipment(account.owner_id, account.id, shipment_id)
            except NotFoundError:
                metrics.resolver_lookups_total.labels(result="not_found").inc()
                logger.debug("Shipment %s not in account %s", shipment_id, account.id)
                continue
            except LastMileError as e:
                metrics.resolver_lookups_total.labels(result="error").inc()
                logger.warning(
                    "Looking up account %s for shipment %s failed: %s", account.id, shipment_id, e
                )
                continue

            if payload.get("id") is None:
                metrics.resolver_lookups_total.labels(result="empty").inc()
                continue

            metrics.resolver_lookups_total.labels(result="found").inc()
            logger.info(
                "Shipment %s found in account %s after %d lookup(s)", shipment_id, account.id, attempts
            )
            return Resolution(
                shipment_id=shipment_id,
                payload=payload,
                account=account,
                resolved_from=resolved_from or RESOLVED_NUMERIC,
                attempts=attempts,
            )

        raise NotFoundAcrossAccounts(shipment_id, attempts)

    async def _via_order(self, account: MarketplaceAccount, order_id: str) -> Optional[Found]:
        order = await self.client.get_order(account.owner_id, account.id, order_id)
        return await self._shipment_of(account, order, pack_id=order.get("pack_id"))

    async def _via_pack(self, account: MarketplaceAccount, pack_id: str) -> Optional[Found]:
        pack = await self.client.get_pack(account.owner_id, account.id, pack_id)
        orders = [o for o in pack.get("orders") or [] if isinstance(o, dict) and o.get("id")]
        if not orders:
            return None
        # The first order carries the pack's shipment
        order = await self.client.get_order(account.owner_id, account.id, str(orders[0]["id"]))
        return await self._shipment_of(account, order, pack_id=pack.get("id") or pack_id)

    async def _shipment_of(
        self, account: MarketplaceAccount, order: dict[str, Any], pack_id: Any = None
    ) -> Optional[Found]:
        shipment_id = (order.get("shipping") or {}).get("id")
        if not shipment_id:
            return None
        payload = await self.client.get_shipment(account.owner_id, account.id, str(shipment_id))
        if payload.get("id") is None:
            return None
        return str(shipment_id), payload, {"order_id": order.get("id"), "pack_id": pack_id}
