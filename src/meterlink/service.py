"""Billing service: request attribution, optimistic charging and sync.

The service is the hot path for every metered request. ``charge()`` never
awaits, so authorization is never blocked on the network. Charges collect
in a PendingCharges ledger that a background task ships to the billing
server every ``sync_interval`` seconds. A failed sync merges the unsent
snapshot back so that nothing is lost or counted twice.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from meterlink.account import Account
from meterlink.channel import ConnectionChannel, StatusChangeHandler
from meterlink.config import ConfigurationError, MeterConfig
from meterlink.constants import (
    DEFAULT_SYNC_INTERVAL_SECS,
    MIN_SYNC_INTERVAL_SECS,
    RECONNECT_DELAY_SECS,
    ChannelStatus,
)
from meterlink.ledger import PendingCharges
from meterlink.origin_matcher import OriginMatcher
from meterlink.transport import TransportFactory

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^https?://")
_BEARER_PREFIX = "Bearer"


# ---------------------------------------------------------------------------
# Request attribution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestAttribution:
    """The two request headers the service reads to find the paying account."""

    origin: str | None = None
    authorization: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, Any]) -> RequestAttribution:
        """Build from a header mapping with lower-case keys."""
        return cls(
            origin=headers.get("origin"),
            authorization=headers.get("authorization"),
        )


class MatchOutcome(enum.Enum):
    ALLOWED = "allowed"  # own frontend: no account, no charge
    ACCOUNT = "account"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class AccountMatch:
    """Result of resolving a request to an account."""

    outcome: MatchOutcome
    account: Account | None = None

    @classmethod
    def allowed(cls) -> AccountMatch:
        return cls(MatchOutcome.ALLOWED)

    @classmethod
    def unresolved(cls) -> AccountMatch:
        return cls(MatchOutcome.UNRESOLVED)

    @classmethod
    def of(cls, account: Account) -> AccountMatch:
        return cls(MatchOutcome.ACCOUNT, account)


def normalize_origin(origin: str) -> str:
    """Lower-case and strip a leading ``http://``/``https://``."""
    return _SCHEME_RE.sub("", origin.lower())


def _parse_bearer(authorization: str) -> str | None:
    scheme, _, token = authorization.partition(" ")
    if scheme != _BEARER_PREFIX or not token:
        return None
    return token


# ---------------------------------------------------------------------------
# BillingService
# ---------------------------------------------------------------------------


class BillingService:
    """Local credit accounting reconciled with a remote billing server.

    - ``charge()`` authorizes one request against the local balance.
    - ``connect()`` opens the channel and starts the sync loop.
    - ``terminate()`` cancels the sync loop and closes the channel.
    - Inbound ``accounts-update``/``balance-update`` messages refresh accounts.
    """

    def __init__(
        self,
        billing_server_url: str | None,
        service_token: str | None,
        pricing: Mapping[str, float],
        allowlist: list[str] | None = None,
        sync_interval: float = DEFAULT_SYNC_INTERVAL_SECS,
        *,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
        transport_factory: TransportFactory | None = None,
        on_status_change: StatusChangeHandler | None = None,
    ) -> None:
        if sync_interval < MIN_SYNC_INTERVAL_SECS:
            raise ConfigurationError(
                f"sync_interval must be at least {MIN_SYNC_INTERVAL_SECS} seconds, "
                f"got {sync_interval}"
            )
        for category, price in pricing.items():
            if price < 0:
                raise ConfigurationError(
                    f"price for category {category!r} must be non-negative, got {price}"
                )
        self.sync_interval = sync_interval
        self.pricing: Mapping[str, float] = dict(pricing)
        self.allowlist: frozenset[str] = frozenset(allowlist or ())
        self._frontend = OriginMatcher(self.allowlist)
        self._accounts: dict[str, Account] | None = None
        self._pending = PendingCharges()
        self._sync_task: asyncio.Task[None] | None = None
        self.sync_in_progress = False
        self._status_listener = on_status_change
        self._total_syncs = 0
        self._failed_syncs = 0
        self._last_sync_error: str | None = None
        self.channel = ConnectionChannel(
            billing_server_url,
            service_token,
            on_message=self.on_message,
            on_status_change=self._on_status_change,
            transport_factory=transport_factory,
            reconnect_delay=reconnect_delay,
        )

    @classmethod
    def from_config(cls, config: MeterConfig, **kwargs: Any) -> BillingService:
        config.validate()
        return cls(
            config.billing_server_url,
            config.service_token,
            config.pricing,
            config.allowlist,
            config.sync_interval_secs,
            reconnect_delay=config.reconnect_delay_secs,
            **kwargs,
        )

    @property
    def is_initialized(self) -> bool:
        """True once the server has sent at least one accounts update."""
        return self._accounts is not None

    @property
    def accounts(self) -> dict[str, Account]:
        return self._accounts or {}

    @property
    def pending_charges(self) -> PendingCharges:
        return self._pending

    def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the billing server and start the sync loop."""
        if self.channel.connected:
            return
        await self.channel.connect()
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._sync_loop())

    async def terminate(self) -> None:
        """Stop syncing and close the channel. Unsynced charges are kept in memory."""
        task, self._sync_task = self._sync_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.channel.close()

    # -- attribution ----------------------------------------------------------

    def match_account(self, request: RequestAttribution | Mapping[str, Any]) -> AccountMatch:
        """Resolve a request to an account by origin, then by bearer API key."""
        if not isinstance(request, RequestAttribution):
            request = RequestAttribution.from_headers(request)

        origin = request.origin
        if self._frontend.match(origin):
            return AccountMatch.allowed()

        if self._accounts is None:
            return AccountMatch.unresolved()

        if origin:
            normalized = normalize_origin(origin)
            for account in self._accounts.values():
                if account.matches_origin(normalized):
                    return AccountMatch.of(account)

        if request.authorization:
            api_key = _parse_bearer(request.authorization)
            if api_key is not None:
                for account in self._accounts.values():
                    if api_key in account.api_keys:
                        return AccountMatch.of(account)

        return AccountMatch.unresolved()

    # -- charging -------------------------------------------------------------

    def charge(
        self, source: str | RequestAttribution | Mapping[str, Any], category: str,
    ) -> bool:
        """Charge the price of ``category`` to an account id or a request.

        Returns True when charged (or when the request comes from an
        allowlisted origin, which is never charged) and False on unknown
        account or insufficient balance. An unknown category raises KeyError.
        """
        if isinstance(source, str):
            account = self.get_account(source)
        else:
            match = self.match_account(source)
            if match.outcome is MatchOutcome.ALLOWED:
                return True
            account = match.account

        if account is None:
            return False

        credits = self.pricing[category]
        if not account.try_charge(credits):
            return False
        self._pending.record(account.id, category, credits)
        return True

    # -- synchronization ------------------------------------------------------

    async def _sync_loop(self) -> None:
        """Run one sync per interval until cancelled by terminate()."""
        logger.info("Billing sync loop started (interval=%ss).", self.sync_interval)
        try:
            while True:
                await asyncio.sleep(self.sync_interval)
                try:
                    await self.sync_charges()
                except Exception:
                    logger.exception("Billing sync tick failed; continuing.")
        except asyncio.CancelledError:
            pass

    async def sync_charges(self) -> bool:
        """Ship pending charges to the server. Returns True if a batch was sent.

        Skips (returns False) when disconnected, when nothing is pending,
        before the first accounts update, or while another sync is in
        flight. On failure the unsent batch is merged back additively.
        """
        if (
            not self.channel.connected
            or not self._pending
            or self._accounts is None
            or self.sync_in_progress
        ):
            return False

        self.sync_in_progress = True
        try:
            # Rotate state out before the network wait; no await until send().
            snapshot, self._pending = self._pending, PendingCharges()
            charged_balances: dict[str, float] = {}
            for account_id, account in self._accounts.items():
                charged_balances[account_id] = account.charged_balance
                account.charged_balance = 0

            try:
                await self.channel.send({"type": "charge", "data": snapshot.to_wire()})
            except asyncio.CancelledError:
                self._restore(snapshot, charged_balances)
                raise
            except Exception as exc:
                self._restore(snapshot, charged_balances)
                self._failed_syncs += 1
                self._last_sync_error = str(exc)
                logger.warning(
                    "Failed to sync charges for %d account(s); merged back for retry: %s",
                    len(snapshot), exc,
                )
                return False

            self._total_syncs += 1
            logger.info(
                "Synced %d charge(s) for %d account(s).",
                snapshot.total_count(), len(snapshot),
            )
            return True
        finally:
            self.sync_in_progress = False

    def _restore(self, snapshot: PendingCharges, charged_balances: dict[str, float]) -> None:
        """Merge an unsent snapshot into charges recorded during the attempt."""
        snapshot.merge(self._pending)
        self._pending = snapshot
        for account_id, charged in charged_balances.items():
            account = self.accounts.get(account_id)
            if account is not None:
                account.charged_balance += charged

    # -- inbound messages -----------------------------------------------------

    def on_message(self, message: dict[str, Any]) -> None:
        """Dispatch a server message by its ``type``."""
        kind = message.get("type")
        data = message.get("data")
        if kind == "accounts-update":
            self._on_accounts_update(data or [])
        elif kind == "balance-update":
            self._on_balances_update(data or {})
        else:
            logger.warning("Unknown billing message type: %r", kind)

    def _on_accounts_update(self, records: list[dict[str, Any]]) -> None:
        if self._accounts is None:
            self._accounts = {}
        for record in records:
            try:
                account = self._accounts.get(record.get("id"))
                if account is None:
                    account = Account.from_record(record)
                    self._accounts[account.id] = account
                else:
                    account.update(record)
            except (ValueError, AttributeError, TypeError) as exc:
                logger.warning("Skipping invalid account record: %s", exc)
        logger.info("Accounts updated: %d record(s), %d known.", len(records), len(self._accounts))

    def _on_balances_update(self, balances: dict[str, Any]) -> None:
        for account_id, balance in balances.items():
            account = self.accounts.get(account_id)
            if account is None:
                continue
            try:
                account.update({"balance": balance})
            except ValueError as exc:
                logger.warning("Ignoring balance update for %s: %s", account_id, exc)

    def _on_status_change(self, new_status: ChannelStatus, prev_status: ChannelStatus) -> None:
        logger.info(
            "Billing connection status changed: %s => %s",
            prev_status.value, new_status.value,
        )
        if self._status_listener is not None:
            self._status_listener(new_status, prev_status)

    # -- monitoring -----------------------------------------------------------

    def health(self) -> dict[str, object]:
        """Return service health metrics for monitoring."""
        return {
            "status": self.channel.status.value,
            "accounts_loaded": self.is_initialized,
            "accounts": len(self.accounts),
            "pending_accounts": len(self._pending),
            "pending_credits": self._pending.total_credits(),
            "sync_in_progress": self.sync_in_progress,
            "sync_loop_running": self._sync_task is not None and not self._sync_task.done(),
            "total_syncs": self._total_syncs,
            "failed_syncs": self._failed_syncs,
            "last_sync_error": self._last_sync_error,
            "total_reconnects": self.channel.total_reconnects,
        }
