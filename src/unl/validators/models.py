"""Data models for the validators engine.

These models represent known validators, per-source fetch state, the
transient diff produced by a pull, received validations, and the
immutable Chosen set consumed by consensus.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from .sources import Source

# =============================================================================
# ENUMS
# =============================================================================


class SourceStatus(StrEnum):
    """Outcome of the most recent pull of a source."""

    NEW = "new"  # Never pulled
    OK = "ok"  # Last pull succeeded
    DEGRADED = "degraded"  # Last pull returned malformed content
    UNAVAILABLE = "unavailable"  # Last pull failed transiently


# =============================================================================
# VALIDATOR RECORD
# =============================================================================


@dataclass
class ValidatorRecord:
    """A known validator and its running score.

    Trust follows origins: a record is trusted while at least one source
    lists it. Score fields accumulate across trust changes and are never
    reset when a record is untrusted.
    """

    identity: str  # Ed25519 public key (hex)
    label: str | None = None
    origins: set[str] = field(default_factory=set)
    trusted: bool = False

    # Score
    rounds_observed: int = 0
    participated: int = 0
    wasted: int = 0

    first_seen: float = field(default_factory=time.time)
    last_seen: float = 0.0

    @property
    def participation(self) -> float | None:
        """Fraction of observed rounds with a validation. None if no rounds."""
        if self.rounds_observed == 0:
            return None
        return self.participated / self.rounds_observed

    @property
    def wasted_rate(self) -> float:
        """Wasted validations per observed round."""
        if self.rounds_observed == 0:
            return 0.0
        return self.wasted / self.rounds_observed

    def add_origin(self, source_name: str) -> None:
        """List this validator under a source, (re)activating trust."""
        self.origins.add(source_name)
        self.trusted = True
        self.last_seen = time.time()

    def remove_origin(self, source_name: str) -> bool:
        """Drop a source from the origins.

        Returns:
            True if the record lost trust as a result
        """
        self.origins.discard(source_name)
        self.last_seen = time.time()
        if not self.origins and self.trusted:
            self.trusted = False
            return True
        return False

    def decay(self, window: int) -> bool:
        """Halve the score counters once the observed rounds exceed window.

        Returns:
            True if the counters were halved
        """
        if window <= 0 or self.rounds_observed <= window:
            return False
        self.rounds_observed //= 2
        self.participated //= 2
        self.wasted //= 2
        return True

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for persistence."""
        return {
            "identity": self.identity,
            "label": self.label,
            "origins": sorted(self.origins),
            "trusted": self.trusted,
            "rounds_observed": self.rounds_observed,
            "participated": self.participated,
            "wasted": self.wasted,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorRecord:
        """Deserialize from dictionary."""
        return cls(
            identity=data["identity"],
            label=data.get("label"),
            origins=set(data.get("origins", [])),
            trusted=bool(data.get("trusted", False)),
            rounds_observed=data.get("rounds_observed", 0),
            participated=data.get("participated", 0),
            wasted=data.get("wasted", 0),
            first_seen=data.get("first_seen", 0.0),
            last_seen=data.get("last_seen", 0.0),
        )


# =============================================================================
# SOURCE STATE
# =============================================================================


@dataclass
class SourceState:
    """Logic-owned state of one registered source.

    Holds the membership snapshot of the last successful pull (used for
    diffing) and health counters for the sources query.
    """

    source: Source
    static: bool = False
    members: frozenset[str] = frozenset()
    status: SourceStatus = SourceStatus.NEW

    success_count: int = 0
    failure_count: int = 0
    last_fetch: float = 0.0
    last_success: float = 0.0
    last_failure: float = 0.0
    last_latency_ms: float = 0.0
    last_error: str | None = None

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def success_rate(self) -> float:
        """Success rate (0.0 to 1.0). Returns 1.0 if never pulled."""
        total = self.success_count + self.failure_count
        if total == 0:
            return 1.0
        return self.success_count / total

    def record_success(self, members: frozenset[str], latency_ms: float) -> None:
        """Replace the snapshot after a successful pull."""
        now = time.time()
        self.members = members
        self.status = SourceStatus.OK
        self.success_count += 1
        self.last_fetch = now
        self.last_success = now
        self.last_latency_ms = latency_ms
        self.last_error = None

    def record_failure(self, status: SourceStatus, error: str) -> None:
        """Record a failed pull. The snapshot is left untouched."""
        now = time.time()
        self.status = status
        self.failure_count += 1
        self.last_fetch = now
        self.last_failure = now
        self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for persistence and the sources query."""
        return {
            **self.source.to_dict(),
            "static": self.static,
            "members": sorted(self.members),
            "status": self.status.value,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_fetch": self.last_fetch,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "last_latency_ms": self.last_latency_ms,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceState:
        """Deserialize from dictionary."""
        from .sources import source_from_dict

        return cls(
            source=source_from_dict(data),
            static=bool(data.get("static", False)),
            members=frozenset(data.get("members", [])),
            status=SourceStatus(data.get("status", SourceStatus.NEW.value)),
            success_count=data.get("success_count", 0),
            failure_count=data.get("failure_count", 0),
            last_fetch=data.get("last_fetch", 0.0),
            last_success=data.get("last_success", 0.0),
            last_failure=data.get("last_failure", 0.0),
            last_latency_ms=data.get("last_latency_ms", 0.0),
            last_error=data.get("last_error"),
        )


# =============================================================================
# FETCH DIFF
# =============================================================================


@dataclass(frozen=True)
class FetchDiff:
    """Three-way membership diff between two pulls of one source."""

    unchanged: frozenset[str] = frozenset()
    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    @classmethod
    def compute(cls, previous: frozenset[str], current: frozenset[str]) -> FetchDiff:
        return cls(
            unchanged=previous & current,
            added=current - previous,
            removed=previous - current,
        )

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


# =============================================================================
# VALIDATIONS
# =============================================================================


@dataclass(frozen=True)
class ReceivedValidation:
    """A signed-validation observation handed over by the network layer.

    Signature checking happens before this point; only the fields needed
    for scoring are carried.
    """

    validator: str  # Ed25519 public key (hex)
    ledger_hash: str
    ledger_seq: int | None = None
    received_at: float = field(default_factory=time.time)


# =============================================================================
# CHOSEN SET
# =============================================================================


@dataclass(frozen=True)
class ChosenSet:
    """Immutable snapshot of the validators selected for consensus.

    Published by rebinding a single reference, so readers always see a
    complete set.
    """

    validators: tuple[str, ...] = ()
    target_count: int = 0
    population: int = 0  # Trusted validators available at build time
    seed: int | None = None
    built_at: float = 0.0
    _members: frozenset[str] = field(default=frozenset(), init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_members", frozenset(self.validators))

    def __len__(self) -> int:
        return len(self.validators)

    def __contains__(self, identity: object) -> bool:
        return identity in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(self.validators)

    @property
    def shortfall(self) -> int:
        """How many validators short of the target this set is."""
        return max(0, self.target_count - len(self.validators))

    def to_dict(self) -> dict[str, Any]:
        return {
            "validators": list(self.validators),
            "size": len(self.validators),
            "target_count": self.target_count,
            "population": self.population,
            "shortfall": self.shortfall,
            "seed": self.seed,
            "built_at": self.built_at,
        }
