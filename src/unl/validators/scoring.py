"""Participation scoring from observed validations.

A round is the interval between two ledger closes. During a round,
validations are buffered per validator. When the round closes with an
accepted ledger hash:

- every trusted validator accrues one observed round
- a validator that sent any validation in the round accrues one
  participated round
- each distinct non-accepted ledger hash it validated counts as one
  wasted validation

Counters are bounded by halving once a record's observed rounds exceed
the window (see ValidatorRecord.decay), which keeps the participation
ratio while letting old behavior fade.

Validations for any of the last few accepted ledgers arrived after their
round closed and are dropped as late.

Validations from unknown or untrusted validators are not scored, so an
untrusted record's history stays as it was when it lost trust.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque

from ..core import defaults
from .models import ReceivedValidation, ValidatorRecord

logger = logging.getLogger(__name__)


class ScoreBook:
    """Buffers the current round and folds it into validator records."""

    def __init__(
        self,
        window: int = defaults.DEFAULT_SCORE_WINDOW,
        history: int = defaults.ACCEPTED_HISTORY,
    ):
        self.window = window
        self.last_closed: str | None = None
        self._accepted: deque[str] = deque(maxlen=max(history, 1))
        self._accepted_set: set[str] = set()
        self.rounds_closed = 0
        self._round: dict[str, set[str]] = defaultdict(set)
        self._stats: dict[str, int] = {
            "validations": 0,
            "duplicates": 0,
            "late": 0,
            "ignored_unknown": 0,
            "ignored_untrusted": 0,
            "decays": 0,
        }

    @property
    def pending(self) -> int:
        """Number of validators with validations buffered this round."""
        return len(self._round)

    def observe(self, validation: ReceivedValidation, record: ValidatorRecord | None) -> bool:
        """Buffer a validation for the current round.

        Args:
            validation: The received validation
            record: The validator's record, or None if unknown

        Returns:
            True if the validation will be scored
        """
        if record is None:
            self._stats["ignored_unknown"] += 1
            return False
        if not record.trusted:
            self._stats["ignored_untrusted"] += 1
            return False
        if validation.ledger_hash in self._accepted_set:
            # Arrived after its ledger closed
            self._stats["late"] += 1
            return False

        hashes = self._round[validation.validator]
        if validation.ledger_hash in hashes:
            self._stats["duplicates"] += 1
            return False

        hashes.add(validation.ledger_hash)
        self._stats["validations"] += 1
        return True

    def close_round(
        self,
        ledger_hash: str,
        records: dict[str, ValidatorRecord],
    ) -> list[ValidatorRecord]:
        """Close the current round with the accepted ledger.

        Args:
            ledger_hash: Hash of the ledger that closed
            records: Known-validator table

        Returns:
            Records whose score changed
        """
        touched: list[ValidatorRecord] = []

        for identity, record in records.items():
            if not record.trusted:
                continue

            hashes = self._round.get(identity, set())
            record.rounds_observed += 1
            if hashes:
                record.participated += 1
                record.wasted += len(hashes - {ledger_hash})

            if record.decay(self.window):
                self._stats["decays"] += 1
            touched.append(record)

        self._round.clear()
        self.last_closed = ledger_hash
        self._remember_accepted(ledger_hash)
        self.rounds_closed += 1

        logger.debug(f"Closed round {self.rounds_closed} at {ledger_hash[:16]}, scored {len(touched)} validators")
        return touched

    def _remember_accepted(self, ledger_hash: str) -> None:
        if ledger_hash in self._accepted_set:
            return
        if len(self._accepted) == self._accepted.maxlen:
            self._accepted_set.discard(self._accepted[0])
        self._accepted.append(ledger_hash)
        self._accepted_set.add(ledger_hash)

    def get_stats(self) -> dict[str, int]:
        return {**self._stats, "rounds_closed": self.rounds_closed}
