"""UNL - Validator list aggregation and Chosen-set selection.

unl provides:
- Validator list sources (inline strings, local files, remote URLs)
- Reconciliation of source lists into a known-validator table
- Participation scoring from observed validations
- A bounded, pseudo-randomly sampled Chosen set for consensus
- A single-writer dispatcher that serializes every mutation
"""

__version__ = "0.3.0"

from . import (
    core as core,
)
from . import (
    validators as validators,
)
