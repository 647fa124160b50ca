"""Settings for one BillingService: server endpoint, token, prices, allowlist.

Validated once up front; a bad value fails construction and is never retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from meterlink.constants import (
    DEFAULT_SYNC_INTERVAL_SECS,
    MIN_SYNC_INTERVAL_SECS,
    RECONNECT_DELAY_SECS,
)


class ConfigurationError(ValueError):
    """Raised at construction time for unusable settings. Never retried."""


@dataclass(frozen=True)
class MeterConfig:
    billing_server_url: str | None = None
    service_token: str | None = None
    pricing: dict[str, float] = field(default_factory=dict)
    allowlist: list[str] = field(default_factory=list)
    sync_interval_secs: float = DEFAULT_SYNC_INTERVAL_SECS
    reconnect_delay_secs: float = RECONNECT_DELAY_SECS

    def validate(self) -> None:
        """Raise ConfigurationError if the settings cannot run a service."""
        if not self.billing_server_url:
            raise ConfigurationError("billing_server_url is required")
        if not self.service_token:
            raise ConfigurationError("service_token is required")
        if self.sync_interval_secs < MIN_SYNC_INTERVAL_SECS:
            raise ConfigurationError(
                f"sync_interval_secs must be at least {MIN_SYNC_INTERVAL_SECS}, "
                f"got {self.sync_interval_secs}"
            )
        for category, price in self.pricing.items():
            if price < 0:
                raise ConfigurationError(
                    f"price for category {category!r} must be non-negative, got {price}"
                )
