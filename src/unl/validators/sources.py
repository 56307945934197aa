"""
Validator list sources.

A source provides a list of validator identities. Three variants exist:

1. StaticStringsSource: an inline list from configuration
2. StaticFileSource: a list file on local disk
3. DynamicUrlSource: a list published at an HTTP(S) endpoint

Every variant exposes the same `async pull()` returning a FetchResult or
raising a FetchError. Static variants only fail on malformed content;
the dynamic variant may also fail transiently (network error, timeout,
non-200 response).

List format (one validator per line):

    # comment
    <64 hex chars Ed25519 public key> [label ...]

Dynamic sources may also serve JSON: either a list of keys/objects or
{"validators": [{"public_key": "...", "label": "..."}, ...]}.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, ClassVar, Dict, Iterable, Optional, Union
from urllib.parse import urlparse

import aiohttp
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..core import defaults
from ..core.config import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class FetchError(Exception):
    """Base exception for source pull failures."""
    pass


class TransientFetchError(FetchError):
    """Raised when a source is temporarily unreachable (network, timeout)."""
    pass


class MalformedSourceError(FetchError):
    """Raised when a source returns content that cannot be parsed."""
    pass


# =============================================================================
# DATA MODELS
# =============================================================================


class SourceKind(StrEnum):
    """The closed set of source variants."""

    STATIC_STRINGS = "static_strings"
    STATIC_FILE = "static_file"
    DYNAMIC_URL = "dynamic_url"


@dataclass(frozen=True)
class FetchResult:
    """Identities returned by one pull, with optional per-identity labels."""

    identities: frozenset[str]
    labels: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.identities)


# =============================================================================
# PARSING
# =============================================================================


def normalize_public_key(value: str) -> str:
    """
    Validate and normalize a hex-encoded Ed25519 public key.

    Args:
        value: Candidate key (hex, any case)

    Returns:
        Lowercase hex of the 32-byte public key

    Raises:
        ValueError: If the value is not a valid Ed25519 public key
    """
    try:
        key_bytes = bytes.fromhex(value)
    except (ValueError, TypeError) as e:
        raise ValueError(f"not hex: {value[:20]!r}") from e

    public_key = Ed25519PublicKey.from_public_bytes(key_bytes)
    return public_key.public_bytes_raw().hex()


def parse_validator_lines(lines: Iterable[str], origin: str) -> FetchResult:
    """
    Parse a line-oriented validator list.

    Any invalid line makes the whole list malformed: a partially
    understood list is never applied.

    Args:
        lines: Lines of the list
        origin: Source name, for error messages

    Returns:
        FetchResult with the listed identities

    Raises:
        MalformedSourceError: On any invalid line, or an empty list
    """
    identities: set[str] = set()
    labels: Dict[str, str] = {}

    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(None, 1)
        try:
            identity = normalize_public_key(parts[0])
        except ValueError as e:
            raise MalformedSourceError(
                f"{origin}: line {lineno}: invalid public key ({e})"
            ) from e

        identities.add(identity)
        if len(parts) > 1 and parts[1].strip():
            labels[identity] = parts[1].strip()

    if not identities:
        raise MalformedSourceError(f"{origin}: no validators listed")

    return FetchResult(identities=frozenset(identities), labels=labels)


def _entries_from_json(data: Any, origin: str) -> list[str]:
    """Flatten a JSON validator document into list lines."""
    if isinstance(data, dict):
        data = data.get("validators")
    if not isinstance(data, list):
        raise MalformedSourceError(f"{origin}: JSON document has no validator list")

    entries: list[str] = []
    for item in data:
        if isinstance(item, str):
            entries.append(item)
        elif isinstance(item, dict) and isinstance(item.get("public_key"), str):
            label = item.get("label")
            entries.append(f"{item['public_key']} {label}" if label else item["public_key"])
        else:
            raise MalformedSourceError(f"{origin}: unrecognized entry {item!r:.40}")
    return entries


def parse_validator_document(body: str, origin: str) -> FetchResult:
    """
    Parse a fetched document, either JSON or the line format.

    Args:
        body: Document text
        origin: Source name, for error messages

    Returns:
        FetchResult with the listed identities

    Raises:
        MalformedSourceError: If the document cannot be parsed
    """
    stripped = body.lstrip()
    if stripped.startswith(("{", "[")):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise MalformedSourceError(f"{origin}: invalid JSON: {e}") from e
        return parse_validator_lines(_entries_from_json(data, origin), origin)

    return parse_validator_lines(body.splitlines(), origin)


# =============================================================================
# TRANSPORT
# =============================================================================


# (url, timeout_seconds) -> document text
Transport = Callable[[str, float], Awaitable[str]]


async def http_get_text(url: str, timeout: float) -> str:
    """
    Fetch a document over HTTP(S).

    Raises:
        TransientFetchError: On connection errors, timeouts, non-200 status
        MalformedSourceError: If the body cannot be decoded as text
    """
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise TransientFetchError(f"{url} returned HTTP {resp.status}")
                try:
                    return await resp.text()
                except UnicodeDecodeError as e:
                    raise MalformedSourceError(f"{url}: body is not text: {e}") from e
    except aiohttp.ClientError as e:
        raise TransientFetchError(f"Connection error for {url}: {e}") from e
    except asyncio.TimeoutError as e:
        raise TransientFetchError(f"Request timeout for {url}") from e


# =============================================================================
# SOURCE VARIANTS
# =============================================================================


@dataclass(frozen=True)
class StaticStringsSource:
    """A fixed, named list supplied inline (e.g. from configuration)."""

    name: str
    lines: tuple[str, ...] = ()

    kind: ClassVar[SourceKind] = SourceKind.STATIC_STRINGS
    is_static: ClassVar[bool] = True

    def __post_init__(self):
        if not self.name:
            raise ConfigError("Static list sources need a name")
        object.__setattr__(self, "lines", tuple(self.lines))

    async def pull(self) -> FetchResult:
        return parse_validator_lines(self.lines, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "lines": list(self.lines)}


@dataclass(frozen=True)
class StaticFileSource:
    """A list file on local disk. Identified by its path."""

    path: str

    kind: ClassVar[SourceKind] = SourceKind.STATIC_FILE
    is_static: ClassVar[bool] = True

    def __post_init__(self):
        object.__setattr__(self, "path", str(Path(self.path).expanduser()))

    @property
    def name(self) -> str:
        return self.path

    async def pull(self) -> FetchResult:
        try:
            text = Path(self.path).read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise MalformedSourceError(f"{self.path}: cannot read list file: {e}") from e
        return parse_validator_lines(text.splitlines(), self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "path": self.path}


@dataclass(frozen=True)
class DynamicUrlSource:
    """
    A list published at a URL and re-fetched on every pass.

    The transport is injectable; by default documents are fetched with
    aiohttp, bounded by `timeout`.
    """

    url: str
    timeout: float = field(default=defaults.DEFAULT_FETCH_TIMEOUT_SECONDS, compare=False)
    transport: Optional[Transport] = field(default=None, compare=False, repr=False)

    kind: ClassVar[SourceKind] = SourceKind.DYNAMIC_URL
    is_static: ClassVar[bool] = False

    def __post_init__(self):
        url = self.url.strip().rstrip("/")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Source URL must be http(s): {self.url!r}")
        object.__setattr__(self, "url", url)

    @property
    def name(self) -> str:
        return self.url

    async def pull(self) -> FetchResult:
        transport = self.transport or http_get_text
        body = await transport(self.url, self.timeout)
        return parse_validator_document(body, self.url)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "url": self.url}


Source = Union[StaticStringsSource, StaticFileSource, DynamicUrlSource]


def source_from_dict(
    data: Dict[str, Any],
    transport: Optional[Transport] = None,
) -> Source:
    """
    Recreate a source from its serialized definition.

    Raises:
        ConfigError: If the kind is unknown or required fields are missing
    """
    try:
        kind = SourceKind(data.get("kind"))
    except ValueError as e:
        raise ConfigError(f"Unknown source kind: {data.get('kind')!r}") from e

    try:
        if kind is SourceKind.STATIC_STRINGS:
            return StaticStringsSource(name=data["name"], lines=tuple(data.get("lines", [])))
        if kind is SourceKind.STATIC_FILE:
            return StaticFileSource(path=data.get("path") or data["name"])
        return DynamicUrlSource(url=data.get("url") or data["name"], transport=transport)
    except KeyError as e:
        raise ConfigError(f"Source definition missing {e}") from e
