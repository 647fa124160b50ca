"""Constants for meterlink billing synchronization."""

from enum import Enum


MIN_SYNC_INTERVAL_SECS = 5  # floor against overloading the billing server
DEFAULT_SYNC_INTERVAL_SECS = 5
RECONNECT_DELAY_SECS = 2.0  # fixed, not exponential
PING_TIMEOUT_SECS = 10.0
POLICY_VIOLATION_CLOSE_CODE = 1008  # service token rejected


class ChannelStatus(str, Enum):
    """Observable state of the billing server connection."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
