"""
Validators manager.

The public face of the engine. Wires the store, Logic and Dispatcher
together, validates administrative requests synchronously and turns
everything else into queued messages:

    manager = Manager(get_config())
    await manager.start()
    manager.add_url("https://lists.example.com/validators.txt")
    manager.receive_validation(ReceivedValidation(key, ledger_hash))
    manager.ledger_closed(ledger_hash)
    chosen = manager.chosen
    await manager.stop()
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.config import ConfigError, ValidatorsConfig
from ..storage.store import SqliteStore, Store, StoreError
from .dispatcher import (
    AddSource,
    Dispatcher,
    LedgerClosed,
    ReceiveValidation,
    Rebuild,
    RemoveSource,
)
from .logic import Logic
from .models import ChosenSet, ReceivedValidation
from .sources import (
    DynamicUrlSource,
    Source,
    StaticFileSource,
    StaticStringsSource,
    Transport,
)

logger = logging.getLogger(__name__)


class Manager:
    """
    Owns the engine's lifecycle and its administrative surface.

    Add/remove calls may come from any thread. They are checked against
    the definitions submitted so far before being queued, so a name
    conflict is reported to the caller instead of inside the worker.
    """

    def __init__(
        self,
        config: Optional[ValidatorsConfig] = None,
        store: Optional[Store] = None,
        transport: Optional[Transport] = None,
    ):
        self.config = config or ValidatorsConfig()
        self.store = store if store is not None else SqliteStore(self.config.database_path)
        self.transport = transport

        self.logic = Logic(
            self.store,
            target_count=self.config.target_count,
            fetch_timeout=self.config.fetch_timeout_seconds,
            score_window=self.config.score_window,
            transport=transport,
        )
        self.dispatcher = Dispatcher(self.logic, check_interval=self.config.check_interval_seconds)

        self._submitted: Dict[str, Source] = {}
        self._lock = threading.Lock()
        self._running = False
        self._stopping = False

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Open the store, load state, add configured sources and start the worker.

        Raises:
            StoreError: If the store cannot be opened or read (fatal)
            ConfigError: If configured sources conflict with each other
        """
        if self._running:
            logger.warning("Validators already running")
            return

        logger.info("Starting validators")
        try:
            self.store.open()
            self.logic.load()
        except StoreError as e:
            logger.critical(f"Cannot open validator store: {e}")
            raise

        with self._lock:
            for state in self.logic.sources:
                self._submitted[state.name] = state.source

        # Configured sources go in before the worker starts, so the
        # first pass already sees them
        for source in self._configured_sources():
            if not self._register(source):
                continue
            if source.is_static:
                await self.logic.add_static_source(source)
            else:
                self.logic.add_source(source)

        self._stopping = False
        await self.dispatcher.start()
        self._running = True

        logger.info(
            f"Validators started with {len(self.logic.sources)} sources "
            f"and {len(self.logic.validators)} known validators"
        )

    async def stop(self) -> None:
        """Stop the worker, write out anything pending and close the store."""
        if not self._running:
            return

        self._stopping = True
        logger.info("Stopping validators...")

        await self.dispatcher.stop()
        if not self.logic.flush_pending():
            logger.error("Some validator state could not be written before shutdown")
        self.store.close()

        self._running = False
        logger.info("Validators stopped")

    async def __aenter__(self) -> Manager:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _configured_sources(self) -> List[Source]:
        sources: List[Source] = []
        for name, lines in self.config.static_lists.items():
            sources.append(StaticStringsSource(name=name, lines=tuple(lines)))
        for path in self.config.static_files:
            sources.append(StaticFileSource(path=path))
        for url in self.config.source_urls:
            sources.append(self._dynamic_source(url))
        return sources

    def _dynamic_source(self, url: str) -> DynamicUrlSource:
        return DynamicUrlSource(
            url=url,
            timeout=self.config.fetch_timeout_seconds,
            transport=self.transport,
        )

    # -------------------------------------------------------------------------
    # SOURCE MANAGEMENT
    # -------------------------------------------------------------------------

    def _register(self, source: Source) -> bool:
        """
        Record a submitted source definition.

        Returns:
            False if the identical definition was already submitted

        Raises:
            ConfigError: If the name is taken by a different definition
        """
        with self._lock:
            existing = self._submitted.get(source.name)
            if existing is None:
                self._submitted[source.name] = source
                return True
            if existing == source:
                logger.debug(f"Source {source.name} already added")
                return False
            raise ConfigError(
                f"Source {source.name!r} is already registered with a different definition"
            )

    def add_source(self, source: Source) -> bool:
        """
        Queue a source for addition.

        Returns:
            True if queued, False for a duplicate or while stopping

        Raises:
            ConfigError: If the name is taken by a different definition
        """
        if self._stopping:
            logger.warning(f"Ignoring source {source.name} while stopping")
            return False
        if not self._register(source):
            return False
        self.dispatcher.post(AddSource(source))
        return True

    def add_strings(self, name: str, strings: Iterable[str]) -> bool:
        """Add an inline validator list."""
        return self.add_source(StaticStringsSource(name=name, lines=tuple(strings)))

    def add_file(self, path: str) -> bool:
        """Add a validator list file."""
        return self.add_source(StaticFileSource(path=path))

    def add_url(self, url: str) -> bool:
        """Add a published validator list, re-fetched on every check."""
        return self.add_source(self._dynamic_source(url))

    def remove_source(self, name: str) -> bool:
        """
        Queue a source for removal.

        Returns:
            False if no source with that name was added
        """
        with self._lock:
            if self._submitted.pop(name, None) is None:
                logger.warning(f"Cannot remove unknown source {name}")
                return False
        self.dispatcher.post(RemoveSource(name))
        return True

    # -------------------------------------------------------------------------
    # INGRESS
    # -------------------------------------------------------------------------

    def receive_validation(self, validation: ReceivedValidation) -> None:
        """Hand over a received validation. Fire-and-forget."""
        if self._stopping:
            return
        self.dispatcher.post(ReceiveValidation(validation))

    def ledger_closed(self, ledger_hash: str) -> None:
        """Signal that a ledger closed, ending the scoring round. Fire-and-forget."""
        if self._stopping:
            return
        self.dispatcher.post(LedgerClosed(ledger_hash))

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    @property
    def chosen(self) -> ChosenSet:
        """Current Chosen set. Never blocks on the worker."""
        return self.logic.chosen

    async def flush(self) -> None:
        """Wait until everything submitted so far has been handled."""
        await self.dispatcher.flush()

    def rpc_print(self) -> Dict[str, Any]:
        status = self.logic.rpc_print()
        status["scheduler"] = self.dispatcher.get_stats()
        return status

    def rpc_rebuild(self) -> Dict[str, Any]:
        if self._stopping:
            logger.debug("Ignoring rebuild request while stopping")
            return {"chosen_list": "stopping"}
        self.dispatcher.post(Rebuild())
        return {"chosen_list": "rebuilding"}

    def rpc_sources(self) -> Dict[str, Any]:
        return self.logic.rpc_sources()

    @property
    def rpc_handlers(self) -> Dict[str, Callable[[], Dict[str, Any]]]:
        """Administrative handlers by RPC name."""
        return {
            "validators_print": self.rpc_print,
            "validators_rebuild": self.rpc_rebuild,
            "validators_sources": self.rpc_sources,
        }
