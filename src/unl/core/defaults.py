"""Centralized configurable defaults for the validators engine.

All tunable parameters in one place. ValidatorsConfig reads these as its
field defaults; environment overrides live in core.config.
"""

from __future__ import annotations

from pathlib import Path

# Chosen set sizing
DEFAULT_TARGET_COUNT = 32

# Source checking
DEFAULT_CHECK_INTERVAL_SECONDS = 3600.0  # Re-armed only after a full pass
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0

# Scoring window (rounds). Counters are halved once exceeded; 0 disables.
DEFAULT_SCORE_WINDOW = 256

# Accepted ledger hashes remembered for rejecting late validations
ACCEPTED_HISTORY = 256

# Selection weights
WEIGHT_FLOOR = 0.05  # Every trusted validator keeps a nonzero chance
NEUTRAL_PARTICIPATION = 0.5  # Validators with no observed rounds

# Persistence
DEFAULT_DATA_DIR = Path("~/.unl").expanduser()
DATABASE_FILENAME = "validators.sqlite"

# Administrative RPC
DEFAULT_RPC_HOST = "127.0.0.1"
DEFAULT_RPC_PORT = 8480

# Shutdown
STOP_TIMEOUT_SECONDS = 10.0
