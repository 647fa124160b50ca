"""Per-customer credit account cached locally for request authorization.

Pure data model with no I/O. ``balance`` is the last authoritative value
received from the billing server; ``charged_balance`` is what has been
charged locally since the last sync and is not yet reflected in it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_WILDCARD_PREFIX = "*."

# Server payload key -> Account attribute. Anything else is ignored.
_UPDATABLE_FIELDS: dict[str, str] = {
    "balance": "balance",
    "apiKeys": "api_keys",
    "api_keys": "api_keys",
    "origins": "origins",
}


def _coerce_balance(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"balance must be a number, got {value!r}")
    if value < 0:
        raise ValueError(f"balance must be non-negative, got {value}")
    return value


def _coerce_strings(name: str, value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{name} must be a list of strings, got {value!r}")
    return frozenset(value)


@dataclass
class Account:
    """Local cache of one customer's balance and unsynced charges.

    ``try_charge()`` returns False on insufficient balance (not exceptional).
    ``update()`` applies an allow-listed set of server fields.
    """

    id: str
    api_keys: frozenset[str] = frozenset()
    origins: frozenset[str] = frozenset()
    balance: float = 0
    charged_balance: float = 0

    @property
    def available_balance(self) -> float:
        """Credits that can still be charged before the next sync."""
        return self.balance - self.charged_balance

    def try_charge(self, amount: float) -> bool:
        """Charge ``amount`` credits. Returns False if the balance is insufficient."""
        if amount < 0:
            return False
        if self.available_balance < amount:
            return False
        self.charged_balance += amount
        return True

    def matches_origin(self, origin: str | None) -> bool:
        """Return True if a normalized request origin belongs to this account.

        An entry matches exactly, or as ``*.suffix`` against any host ending
        in ``.suffix`` at any depth. A wildcard does not admit its bare root.
        """
        if not origin:
            return False
        return any(
            entry == origin
            or (entry.startswith(_WILDCARD_PREFIX) and origin.endswith(entry[1:]))
            for entry in self.origins
        )

    def update(self, props: dict[str, Any]) -> None:
        """Overwrite known fields from a server account record.

        ``id`` is immutable and ``charged_balance`` is local-only, so both
        are skipped. Raises ValueError on a malformed field value, leaving
        the account untouched.
        """
        changes: dict[str, Any] = {}
        for key, value in props.items():
            attr = _UPDATABLE_FIELDS.get(key)
            if attr is None:
                if key != "id":
                    logger.debug("Ignoring unknown account field %r for %s.", key, self.id)
                continue
            if attr == "balance":
                changes[attr] = _coerce_balance(value)
            else:
                changes[attr] = _coerce_strings(key, value)

        for attr, value in changes.items():
            setattr(self, attr, value)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Account:
        """Create an account from a server ``accounts-update`` record."""
        account_id = record.get("id")
        if not isinstance(account_id, str) or not account_id:
            raise ValueError(f"account record has no id: {record!r}")
        account = cls(id=account_id)
        account.update(record)
        return account
