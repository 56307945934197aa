"""Validator list logic.

Logic owns every piece of mutable engine state:

- the ordered collection of sources and their membership snapshots
- the known-validator table and its scores
- the current Chosen set

None of it is locked. Logic must only be driven from a single execution
context (the Dispatcher's worker, or startup before the worker runs).
The Chosen set is the exception for readers: it is an immutable object
published by rebinding `self._chosen`, so any context may read it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from typing import Any, Iterable, Optional

from ..core import defaults
from ..core.config import ConfigError
from ..storage.store import Store, StoreError
from .models import ChosenSet, FetchDiff, ReceivedValidation, SourceState, SourceStatus, ValidatorRecord
from .scoring import ScoreBook
from .selection import compute_selection_weight, select_chosen
from .sources import (
    DynamicUrlSource,
    FetchResult,
    MalformedSourceError,
    Source,
    TransientFetchError,
    Transport,
)

logger = logging.getLogger(__name__)


class Logic:
    """Source management, reconciliation, scoring and Chosen-set building."""

    def __init__(
        self,
        store: Store,
        target_count: int = defaults.DEFAULT_TARGET_COUNT,
        fetch_timeout: float = defaults.DEFAULT_FETCH_TIMEOUT_SECONDS,
        score_window: int = defaults.DEFAULT_SCORE_WINDOW,
        transport: Optional[Transport] = None,
    ):
        if target_count < 1:
            raise ConfigError(f"target_count must be at least 1, got {target_count}")

        self.store = store
        self.target_count = target_count
        self.fetch_timeout = fetch_timeout
        self.transport = transport

        self._sources: dict[str, SourceState] = {}
        self._validators: dict[str, ValidatorRecord] = {}
        self._rotation: deque[str] = deque()
        self._scores = ScoreBook(window=score_window)
        self._chosen = ChosenSet(target_count=target_count)

        # Records whose last write failed; retried on the next turn
        self._dirty_validators: set[str] = set()
        self._dirty_sources: set[str] = set()

        self._stats: dict[str, int] = {
            "fetches": 0,
            "fetch_failures": 0,
            "passes": 0,
            "rebuilds": 0,
            "store_failures": 0,
        }

    # -------------------------------------------------------------------------
    # READ ACCESS
    # -------------------------------------------------------------------------

    @property
    def chosen(self) -> ChosenSet:
        """The current Chosen set. Safe to read from any context."""
        return self._chosen

    @property
    def sources(self) -> list[SourceState]:
        return list(self._sources.values())

    @property
    def validators(self) -> dict[str, ValidatorRecord]:
        return dict(self._validators)

    @property
    def scores(self) -> ScoreBook:
        return self._scores

    def get_source(self, name: str) -> SourceState | None:
        return self._sources.get(name)

    def get_validator(self, identity: str) -> ValidatorRecord | None:
        return self._validators.get(identity.lower())

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._dirty_validators or self._dirty_sources)

    # -------------------------------------------------------------------------
    # LOAD
    # -------------------------------------------------------------------------

    def load(self) -> None:
        """Populate in-memory tables from the store.

        Raises:
            StoreError: If the store cannot be read
        """
        records = self.store.load_validators()
        states = self.store.load_sources()

        for record in records:
            self._validators[record.identity] = record

        for state in states:
            if isinstance(state.source, DynamicUrlSource):
                state.source = dataclasses.replace(
                    state.source,
                    timeout=self.fetch_timeout,
                    transport=self.transport,
                )
            state.static = False
            self._sources[state.name] = state

        trusted = sum(1 for r in self._validators.values() if r.trusted)
        logger.info(
            f"Loaded {len(records)} validators ({trusted} trusted) "
            f"and {len(states)} sources from store"
        )

    # -------------------------------------------------------------------------
    # SOURCE MANAGEMENT
    # -------------------------------------------------------------------------

    def add_source(self, source: Source) -> bool:
        """Enroll a dynamic source into the fetch rotation.

        Returns:
            False if a source with the same name is already registered
        """
        if source.is_static:
            raise ConfigError(f"{source.name} is static; use add_static_source")

        if source.name in self._sources:
            logger.debug(f"Source already registered: {source.name}")
            return False

        state = SourceState(source=source)
        self._sources[source.name] = state

        # Joins a pass in progress so it is visited before the pass completes
        if self._rotation:
            self._rotation.append(source.name)

        self._persist(sources=[state])
        logger.info(f"Added source {source.name}")
        return True

    async def add_static_source(self, source: Source) -> bool:
        """Register a static source and pull it once.

        Returns:
            False if a source with the same name is already registered
        """
        if not source.is_static:
            raise ConfigError(f"{source.name} is dynamic; use add_source")

        if source.name in self._sources:
            logger.debug(f"Static source already registered: {source.name}")
            return False

        state = SourceState(source=source, static=True)
        self._sources[source.name] = state
        await self._pull(state)
        logger.info(f"Added static source {source.name} with {len(state.members)} validators")
        return True

    def remove_source(self, name: str) -> bool:
        """Remove a source, dropping it from every validator's origins.

        Returns:
            False if no such source is registered
        """
        state = self._sources.pop(name, None)
        if state is None:
            logger.warning(f"Cannot remove unknown source {name}")
            return False

        if name in self._rotation:
            self._rotation = deque(n for n in self._rotation if n != name)

        touched = []
        for identity in state.members:
            record = self._validators.get(identity)
            if record is None:
                continue
            if record.remove_origin(name):
                logger.info(f"Validator {identity[:16]}... no longer listed by any source")
            touched.append(record)

        # A dirty source name with no state is deleted on flush
        if not state.static:
            self._dirty_sources.add(name)
        self._persist(validators=touched)

        logger.info(f"Removed source {name}")
        return True

    # -------------------------------------------------------------------------
    # FETCH AND RECONCILE
    # -------------------------------------------------------------------------

    async def fetch_one(self) -> int:
        """Pull the next dynamic source in the rotation.

        Returns:
            Sources not yet visited in the current pass. Zero means the
            pass completed (trust is re-evaluated and the Chosen set
            rebuilt before returning).
        """
        self.flush_pending()

        if not self._rotation:
            self._rotation.extend(
                name for name, state in self._sources.items() if not state.static
            )
            if self._rotation:
                logger.debug(f"Starting pass over {len(self._rotation)} sources")

        if self._rotation:
            name = self._rotation.popleft()
            await self._pull(self._sources[name])

        remaining = len(self._rotation)
        if remaining == 0:
            self._complete_pass()
        return remaining

    async def _pull(self, state: SourceState) -> FetchDiff | None:
        """Pull one source and reconcile on success.

        Failures are recorded on the source state and never raised.
        """
        self._stats["fetches"] += 1
        start = time.monotonic()

        try:
            result = await asyncio.wait_for(state.source.pull(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            self._record_failure(
                state, SourceStatus.UNAVAILABLE, f"timed out after {self.fetch_timeout}s"
            )
            return None
        except TransientFetchError as e:
            self._record_failure(state, SourceStatus.UNAVAILABLE, str(e))
            return None
        except MalformedSourceError as e:
            self._record_failure(state, SourceStatus.DEGRADED, str(e))
            return None
        except Exception as e:
            logger.exception(f"Unexpected error pulling {state.name}")
            self._record_failure(state, SourceStatus.UNAVAILABLE, f"unexpected error: {e}")
            return None

        latency_ms = (time.monotonic() - start) * 1000
        return self._reconcile(state, result, latency_ms)

    def _record_failure(self, state: SourceState, status: SourceStatus, error: str) -> None:
        self._stats["fetch_failures"] += 1
        state.record_failure(status, error)
        logger.warning(f"Source {state.name} {status.value}: {error}")
        if not state.static:
            self._persist(sources=[state])

    def _reconcile(self, state: SourceState, result: FetchResult, latency_ms: float) -> FetchDiff:
        """Apply a successful pull to the known-validator table."""
        diff = FetchDiff.compute(state.members, result.identities)
        touched: dict[str, ValidatorRecord] = {}

        for identity in diff.added:
            record = self._validators.get(identity)
            if record is None:
                record = ValidatorRecord(identity=identity)
                self._validators[identity] = record
            elif not record.trusted:
                logger.info(f"Validator {identity[:16]}... listed again by {state.name}")
            record.add_origin(state.name)
            touched[identity] = record

        for identity in diff.unchanged:
            record = self._validators.get(identity)
            if record is None:
                record = ValidatorRecord(identity=identity)
                self._validators[identity] = record
            if state.name not in record.origins:
                record.add_origin(state.name)
                touched[identity] = record

        for identity in diff.removed:
            record = self._validators.get(identity)
            if record is None:
                continue
            if record.remove_origin(state.name):
                logger.info(f"Validator {identity[:16]}... no longer listed by any source")
            touched[identity] = record

        for identity, label in result.labels.items():
            record = self._validators[identity]
            if record.label != label:
                record.label = label
                touched[identity] = record

        state.record_success(result.identities, latency_ms)
        self._persist(
            validators=touched.values(),
            sources=[] if state.static else [state],
        )

        if diff.changed:
            logger.info(
                f"Source {state.name}: {len(diff.added)} new, "
                f"{len(diff.removed)} removed, {len(diff.unchanged)} unchanged"
            )
        return diff

    def _complete_pass(self) -> None:
        """Re-evaluate trust from the current snapshots and rebuild."""
        self._stats["passes"] += 1
        changed = []

        for record in self._validators.values():
            origins = {
                name for name in record.origins
                if name in self._sources and record.identity in self._sources[name].members
            }
            trusted = bool(origins)
            if origins != record.origins or trusted != record.trusted:
                record.origins = origins
                record.trusted = trusted
                changed.append(record)

        if changed:
            logger.info(f"Trust re-evaluation updated {len(changed)} validators")
        self._persist(validators=changed)

        self.build_chosen()
        logger.debug(f"Finished checking sources (pass {self._stats['passes']})")

    # -------------------------------------------------------------------------
    # SCORING
    # -------------------------------------------------------------------------

    def receive_validation(self, validation: ReceivedValidation) -> bool:
        """Buffer a validation for the current round.

        Returns:
            True if the validation will be scored
        """
        identity = validation.validator.lower()
        if identity != validation.validator:
            validation = dataclasses.replace(validation, validator=identity)
        return self._scores.observe(validation, self._validators.get(identity))

    def ledger_closed(self, ledger_hash: str) -> int:
        """Close the current scoring round.

        Returns:
            Number of validator records updated
        """
        touched = self._scores.close_round(ledger_hash, self._validators)
        self._persist(validators=touched)
        return len(touched)

    # -------------------------------------------------------------------------
    # CHOSEN SET
    # -------------------------------------------------------------------------

    def build_chosen(self, seed: int | None = None) -> ChosenSet:
        """Rebuild the Chosen set and publish it atomically."""
        chosen = select_chosen(self._validators.values(), self.target_count, seed=seed)
        self._chosen = chosen
        self._stats["rebuilds"] += 1
        logger.info(
            f"Built chosen set: {len(chosen)} of {chosen.population} trusted "
            f"(target {self.target_count})"
        )
        return chosen

    def is_chosen_stale(self) -> bool:
        """True if a chosen validator has since dropped off all sources."""
        chosen = self._chosen
        return any(
            identity not in self._validators or not self._validators[identity].trusted
            for identity in chosen
        )

    # -------------------------------------------------------------------------
    # PERSISTENCE
    # -------------------------------------------------------------------------

    def _persist(
        self,
        validators: Iterable[ValidatorRecord] = (),
        sources: Iterable[SourceState] = (),
    ) -> None:
        for record in validators:
            self._dirty_validators.add(record.identity)
        for state in sources:
            self._dirty_sources.add(state.name)
        self.flush_pending()

    def flush_pending(self) -> bool:
        """Write every dirty record through to the store.

        Returns:
            True if nothing is left pending
        """
        if not self.has_pending_writes:
            return True

        try:
            if self._dirty_validators:
                self.store.save_validators(
                    self._validators[identity]
                    for identity in sorted(self._dirty_validators)
                    if identity in self._validators
                )
                self._dirty_validators.clear()

            for name in sorted(self._dirty_sources):
                state = self._sources.get(name)
                if state is None:
                    self.store.delete_source(name)
                else:
                    self.store.save_source(state)
                self._dirty_sources.discard(name)

        except StoreError as e:
            self._stats["store_failures"] += 1
            logger.error(f"Persistence failed, retrying next turn: {e}")
            return False

        return True

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def _source_summary(self, state: SourceState) -> dict[str, Any]:
        return {
            "name": state.name,
            "kind": state.source.kind.value,
            "static": state.static,
            "status": state.status.value,
            "validators": len(state.members),
            "success_count": state.success_count,
            "failure_count": state.failure_count,
            "success_rate": round(state.success_rate, 3),
            "last_fetch": state.last_fetch,
            "last_success": state.last_success,
            "last_latency_ms": round(state.last_latency_ms, 1),
            "last_error": state.last_error,
        }

    def rpc_sources(self) -> dict[str, Any]:
        """Configured sources and their last-fetch outcome."""
        return {
            "sources": [self._source_summary(state) for state in self._sources.values()],
        }

    def rpc_print(self) -> dict[str, Any]:
        """Full status: validators, scores, Chosen set, sources."""
        chosen = self._chosen
        validators = []
        for identity in sorted(self._validators):
            record = self._validators[identity]
            participation = record.participation
            validators.append({
                **record.to_dict(),
                "participation": round(participation, 4) if participation is not None else None,
                "weight": round(compute_selection_weight(record), 4),
                "chosen": identity in chosen,
            })

        return {
            "validators": validators,
            "chosen": chosen.to_dict(),
            "chosen_stale": self.is_chosen_stale(),
            "shortfall": chosen.shortfall,
            "sources": [self._source_summary(state) for state in self._sources.values()],
            "counts": {
                "known": len(self._validators),
                "trusted": sum(1 for r in self._validators.values() if r.trusted),
                "sources": len(self._sources),
                "dynamic_sources": sum(1 for s in self._sources.values() if not s.static),
            },
            "scoring": self._scores.get_stats(),
            "stats": self.get_stats(),
        }

    def get_stats(self) -> dict[str, int]:
        return {
            **self._stats,
            "pending_writes": len(self._dirty_validators) + len(self._dirty_sources),
        }
