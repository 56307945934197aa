"""Chosen-set construction.

Selects a bounded subset of trusted validators by weighted pseudo-random
sampling without replacement:

- Population: trusted validators, sorted by identity
- If the population fits the target, all of it is chosen
- Otherwise `target_count` validators are drawn, weighted by score

Given the same records, target and seed, the result is identical.
Production rebuilds use a fresh seed each time.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Iterable

import numpy as np

from ..core import defaults
from .models import ChosenSet, ValidatorRecord

logger = logging.getLogger(__name__)


# =============================================================================
# WEIGHT CALCULATION
# =============================================================================


def compute_selection_weight(record: ValidatorRecord) -> float:
    """Compute a validator's selection weight.

    Higher weight = higher probability of selection.

    - Participation: observed fraction of rounds validated (0.5 if unobserved)
    - Wasted penalty: 1 / (1 + wasted validations per round)
    - Floor: keeps every trusted validator selectable

    The weight is strictly increasing in participation for a fixed
    wasted rate.
    """
    participation = record.participation
    if participation is None:
        participation = defaults.NEUTRAL_PARTICIPATION

    wasted_penalty = 1.0 / (1.0 + record.wasted_rate)
    return defaults.WEIGHT_FLOOR + participation * wasted_penalty


def new_seed() -> int:
    """Fresh 64-bit seed for a production rebuild."""
    return secrets.randbits(64)


# =============================================================================
# MAIN SELECTION
# =============================================================================


def select_chosen(
    records: Iterable[ValidatorRecord],
    target_count: int,
    seed: int | None = None,
) -> ChosenSet:
    """Build a Chosen set from the known-validator table.

    Args:
        records: Known validators (untrusted ones are skipped)
        target_count: Maximum size of the set
        seed: Sampling seed; a fresh one is drawn if None

    Returns:
        New ChosenSet with min(population, target_count) validators
    """
    if target_count < 1:
        raise ValueError(f"target_count must be at least 1, got {target_count}")

    if seed is None:
        seed = new_seed()

    trusted = sorted((r for r in records if r.trusted), key=lambda r: r.identity)
    population = len(trusted)

    if population <= target_count:
        chosen = tuple(r.identity for r in trusted)
    else:
        weights = np.array([compute_selection_weight(r) for r in trusted], dtype=float)
        rng = np.random.default_rng(seed)
        picked = rng.choice(population, size=target_count, replace=False, p=weights / weights.sum())
        chosen = tuple(trusted[int(i)].identity for i in picked)

    if population < target_count:
        logger.warning(
            f"Only {population} trusted validators available for a target of {target_count}"
        )

    return ChosenSet(
        validators=chosen,
        target_count=target_count,
        population=population,
        seed=seed,
        built_at=time.time(),
    )
