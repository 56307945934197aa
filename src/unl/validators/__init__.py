"""
Validators engine - source aggregation, scoring and Chosen-set selection.

Components:
- sources: Static and dynamic validator list sources
- logic: Reconciliation, trust, scoring and Chosen-set building
- dispatcher: Single-worker message loop and check scheduling
- manager: Lifecycle and administrative surface

Example:
    from unl.validators import Manager

    manager = Manager(config)
    await manager.start()
    manager.add_url("https://lists.example.com/validators.txt")
    print(manager.chosen.validators)
"""

from .dispatcher import (
    AddSource,
    Barrier,
    CheckSources,
    Dispatcher,
    LedgerClosed,
    Message,
    ReceiveValidation,
    Rebuild,
    RemoveSource,
    SchedulerState,
    Shutdown,
)
from .logic import Logic
from .manager import Manager
from .models import (
    ChosenSet,
    FetchDiff,
    ReceivedValidation,
    SourceState,
    SourceStatus,
    ValidatorRecord,
)
from .scoring import ScoreBook
from .selection import compute_selection_weight, select_chosen
from .sources import (
    DynamicUrlSource,
    FetchError,
    FetchResult,
    MalformedSourceError,
    Source,
    SourceKind,
    StaticFileSource,
    StaticStringsSource,
    TransientFetchError,
    normalize_public_key,
    parse_validator_document,
    parse_validator_lines,
    source_from_dict,
)

__all__ = [
    # Manager
    "Manager",
    # Engine
    "Logic",
    "Dispatcher",
    "SchedulerState",
    "ScoreBook",
    "compute_selection_weight",
    "select_chosen",
    # Messages
    "Message",
    "AddSource",
    "RemoveSource",
    "CheckSources",
    "ReceiveValidation",
    "LedgerClosed",
    "Rebuild",
    "Shutdown",
    "Barrier",
    # Models
    "ChosenSet",
    "FetchDiff",
    "ReceivedValidation",
    "SourceState",
    "SourceStatus",
    "ValidatorRecord",
    # Sources
    "Source",
    "SourceKind",
    "FetchResult",
    "StaticStringsSource",
    "StaticFileSource",
    "DynamicUrlSource",
    "FetchError",
    "TransientFetchError",
    "MalformedSourceError",
    "normalize_public_key",
    "parse_validator_lines",
    "parse_validator_document",
    "source_from_dict",
]
