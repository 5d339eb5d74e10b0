"""Debounced duplicate-customer lookup by phone number."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .models import Opportunity, digits_only

logger = logging.getLogger(__name__)


class PhoneFinder(Protocol):
    def latest_by_phone(self, phone: str, exclude_id: Optional[str] = None) -> Optional[Opportunity]:
        ...


@dataclass(frozen=True)
class PendingLookup:
    ticket: int
    digits: str
    due_at: float
    exclude_id: Optional[str] = None


class DuplicateCustomerLookup:
    """Surface the most recent prior record for the phone being typed.

    Every keystroke calls :meth:`schedule`, which restarts the debounce window
    and issues a new ticket. Results are applied only for the newest ticket so
    a slow, superseded response cannot overwrite a fresher match.
    """

    def __init__(
        self,
        finder: PhoneFinder,
        min_digits: int = 8,
        debounce_seconds: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._finder = finder
        self.min_digits = min_digits
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._ticket = 0
        self._pending: Optional[PendingLookup] = None
        self.match: Optional[Opportunity] = None
        self.checked_digits: str = ""

    @property
    def latest_ticket(self) -> int:
        return self._ticket

    @property
    def pending(self) -> Optional[PendingLookup]:
        return self._pending

    def schedule(self, phone: str, exclude_id: Optional[str] = None) -> int:
        """Restart the debounce window for ``phone``.

        ``exclude_id`` names the record being edited so it is not reported as
        its own duplicate.
        """

        self._ticket += 1
        digits = digits_only(phone)
        if len(digits) < self.min_digits:
            self._pending = None
            self.match = None
            self.checked_digits = ""
            return self._ticket
        self._pending = PendingLookup(
            ticket=self._ticket,
            digits=digits,
            due_at=self._clock() + self.debounce_seconds,
            exclude_id=exclude_id,
        )
        return self._ticket

    def is_due(self) -> bool:
        return self._pending is not None and self._clock() >= self._pending.due_at

    def run_pending(self, force: bool = False) -> Optional[Opportunity]:
        """Query the store for the pending phone once its window has elapsed."""

        pending = self._pending
        if pending is None or (not force and self._clock() < pending.due_at):
            return self.match
        self._pending = None
        try:
            found = self._finder.latest_by_phone(pending.digits, exclude_id=pending.exclude_id)
        except Exception:
            logger.exception("Duplicate customer lookup failed")
            found = None
        self.apply(pending.ticket, pending.digits, found)
        return self.match

    def flush(self) -> Optional[Opportunity]:
        return self.run_pending(force=True)

    def apply(self, ticket: int, digits: str, found: Optional[Opportunity]) -> bool:
        if ticket != self._ticket:
            logger.debug("Dropping stale lookup result for ticket %s", ticket)
            return False
        self.match = found
        self.checked_digits = digits
        return True

    def reset(self) -> None:
        self._ticket += 1
        self._pending = None
        self.match = None
        self.checked_digits = ""
