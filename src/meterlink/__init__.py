"""Meterlink — optimistic local credit metering for API gateways.

Authorizes requests against locally cached balances and reconciles
charges with a remote billing server over a persistent connection.
"""

__version__ = "0.1.0"

from meterlink.account import Account
from meterlink.channel import (
    ChannelError,
    ChannelNotConnectedError,
    ChannelSendError,
    ChannelStateError,
    ConnectionChannel,
)
from meterlink.config import ConfigurationError, MeterConfig
from meterlink.constants import (
    MIN_SYNC_INTERVAL_SECS,
    POLICY_VIOLATION_CLOSE_CODE,
    RECONNECT_DELAY_SECS,
    ChannelStatus,
)
from meterlink.ledger import CategoryCharges, PendingCharges
from meterlink.origin_matcher import OriginMatcher
from meterlink.service import AccountMatch, BillingService, MatchOutcome, RequestAttribution
from meterlink.transport import Transport, TransportClosed

__all__ = [
    "Account",
    "AccountMatch",
    "BillingService",
    "CategoryCharges",
    "ChannelError",
    "ChannelNotConnectedError",
    "ChannelSendError",
    "ChannelStateError",
    "ChannelStatus",
    "ConfigurationError",
    "ConnectionChannel",
    "MatchOutcome",
    "MeterConfig",
    "OriginMatcher",
    "PendingCharges",
    "RequestAttribution",
    "Transport",
    "TransportClosed",
    "MIN_SYNC_INTERVAL_SECS",
    "POLICY_VIOLATION_CLOSE_CODE",
    "RECONNECT_DELAY_SECS",
]
