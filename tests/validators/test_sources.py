"""Tests for validator list sources and list parsing."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from unl.core.config import ConfigError
from unl.validators.sources import (
    DynamicUrlSource,
    MalformedSourceError,
    SourceKind,
    StaticFileSource,
    StaticStringsSource,
    TransientFetchError,
    http_get_text,
    normalize_public_key,
    parse_validator_document,
    parse_validator_lines,
    source_from_dict,
)


def _mock_session(status=200, text="", text_error=None, get_error=None):
    """Build a patched aiohttp.ClientSession context for http_get_text."""
    mock_response = AsyncMock()
    mock_response.status = status
    if text_error is not None:
        mock_response.text = AsyncMock(side_effect=text_error)
    else:
        mock_response.text = AsyncMock(return_value=text)

    mock_ctx = AsyncMock()
    mock_ctx.__aenter__ = AsyncMock(return_value=mock_response)
    mock_ctx.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    if get_error is not None:
        mock_session.get = MagicMock(side_effect=get_error)
    else:
        mock_session.get = MagicMock(return_value=mock_ctx)

    mock_session_ctx = AsyncMock()
    mock_session_ctx.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session_ctx.__aexit__ = AsyncMock(return_value=None)
    return mock_session_ctx


# ============================================================================
# Parsing Tests
# ============================================================================


class TestNormalizePublicKey:
    """Test public key validation."""

    def test_lowercases_valid_key(self, new_key):
        key = new_key()
        assert normalize_public_key(key.upper()) == key

    def test_rejects_non_hex(self):
        with pytest.raises(ValueError):
            normalize_public_key("not-a-key")

    def test_rejects_wrong_length(self, new_key):
        with pytest.raises(ValueError):
            normalize_public_key(new_key()[:62])


class TestParseValidatorLines:
    """Test the line-oriented list format."""

    def test_parses_keys_and_labels(self, keys):
        lines = [
            "# bootstrap list",
            "",
            f"{keys[0]} alice",
            f"  {keys[1]}   bob the validator  ",
            keys[2],
        ]
        result = parse_validator_lines(lines, "test")

        assert result.identities == frozenset(keys[:3])
        assert result.labels == {keys[0]: "alice", keys[1]: "bob the validator"}
        assert len(result) == 3

    def test_duplicates_collapse(self, keys):
        result = parse_validator_lines([keys[0], keys[0].upper()], "test")
        assert result.identities == frozenset({keys[0]})

    def test_one_bad_line_rejects_whole_list(self, keys):
        with pytest.raises(MalformedSourceError) as exc:
            parse_validator_lines([keys[0], "garbage", keys[1]], "mylist")
        assert "mylist" in str(exc.value)
        assert "line 2" in str(exc.value)

    def test_empty_list_is_malformed(self):
        with pytest.raises(MalformedSourceError):
            parse_validator_lines(["# only a comment", ""], "test")


class TestParseValidatorDocument:
    """Test text and JSON documents."""

    def test_plain_text(self, keys):
        result = parse_validator_document(f"{keys[0]}\n{keys[1]} b\n", "url")
        assert result.identities == frozenset(keys[:2])

    def test_json_list_of_strings(self, keys):
        result = parse_validator_document(json.dumps(keys[:3]), "url")
        assert result.identities == frozenset(keys[:3])

    def test_json_validators_object(self, keys):
        body = json.dumps({
            "validators": [
                {"public_key": keys[0], "label": "one"},
                {"public_key": keys[1]},
            ]
        })
        result = parse_validator_document(body, "url")
        assert result.identities == frozenset(keys[:2])
        assert result.labels == {keys[0]: "one"}

    def test_invalid_json(self):
        with pytest.raises(MalformedSourceError):
            parse_validator_document("{not json", "url")

    def test_json_without_list(self):
        with pytest.raises(MalformedSourceError):
            parse_validator_document('{"other": 1}', "url")

    def test_json_unrecognized_entry(self, keys):
        with pytest.raises(MalformedSourceError):
            parse_validator_document(json.dumps([keys[0], 42]), "url")


# ============================================================================
# Source Variant Tests
# ============================================================================


class TestStaticStringsSource:
    """Test inline lists."""

    @pytest.mark.asyncio
    async def test_pull_is_stable(self, keys):
        source = StaticStringsSource(name="inline", lines=keys[:2])
        first = await source.pull()
        second = await source.pull()
        assert first == second
        assert first.identities == frozenset(keys[:2])

    def test_requires_name(self):
        with pytest.raises(ConfigError):
            StaticStringsSource(name="", lines=[])

    def test_identity(self, keys):
        assert StaticStringsSource("a", [keys[0]]) == StaticStringsSource("a", (keys[0],))
        assert StaticStringsSource("a", [keys[0]]) != StaticStringsSource("a", [keys[1]])
        assert StaticStringsSource("a").is_static
        assert StaticStringsSource("a").kind is SourceKind.STATIC_STRINGS


class TestStaticFileSource:
    """Test list files."""

    @pytest.mark.asyncio
    async def test_pull_reads_file(self, tmp_path, keys):
        path = tmp_path / "validators.txt"
        path.write_text(f"# list\n{keys[0]} one\n{keys[1]}\n")

        source = StaticFileSource(path=str(path))
        result = await source.pull()

        assert source.name == str(path)
        assert result.identities == frozenset(keys[:2])

    @pytest.mark.asyncio
    async def test_missing_file_is_malformed(self, tmp_path):
        source = StaticFileSource(path=str(tmp_path / "missing.txt"))
        with pytest.raises(MalformedSourceError):
            await source.pull()


class TestDynamicUrlSource:
    """Test published lists."""

    def test_url_normalized(self):
        source = DynamicUrlSource(url=" https://lists.example.com/unl/ ")
        assert source.name == "https://lists.example.com/unl"
        assert not source.is_static

    def test_rejects_non_http(self):
        with pytest.raises(ConfigError):
            DynamicUrlSource(url="ftp://lists.example.com/unl")

    def test_equality_ignores_transport(self, transport):
        assert DynamicUrlSource(url="https://a.example") == DynamicUrlSource(
            url="https://a.example/", timeout=5.0, transport=transport
        )

    @pytest.mark.asyncio
    async def test_pull_uses_transport(self, transport, keys):
        transport.serve("https://a.example/unl", keys[:3])
        source = DynamicUrlSource(url="https://a.example/unl", transport=transport)

        result = await source.pull()

        assert result.identities == frozenset(keys[:3])
        assert transport.calls == ["https://a.example/unl"]

    @pytest.mark.asyncio
    async def test_transient_error_propagates(self, transport):
        transport.fail("https://a.example/unl", TransientFetchError("down"))
        source = DynamicUrlSource(url="https://a.example/unl", transport=transport)
        with pytest.raises(TransientFetchError):
            await source.pull()


class TestHttpGetText:
    """Test the default aiohttp transport."""

    @pytest.mark.asyncio
    async def test_success(self, keys):
        with patch("aiohttp.ClientSession", return_value=_mock_session(text=keys[0])):
            body = await http_get_text("https://a.example/unl", 5.0)
        assert body == keys[0]

    @pytest.mark.asyncio
    async def test_non_200_is_transient(self):
        with patch("aiohttp.ClientSession", return_value=_mock_session(status=503)):
            with pytest.raises(TransientFetchError) as exc:
                await http_get_text("https://a.example/unl", 5.0)
        assert "503" in str(exc.value)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        session = _mock_session(get_error=aiohttp.ClientError("Connection refused"))
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(TransientFetchError):
                await http_get_text("https://a.example/unl", 5.0)

    @pytest.mark.asyncio
    async def test_undecodable_body_is_malformed(self):
        error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        with patch("aiohttp.ClientSession", return_value=_mock_session(text_error=error)):
            with pytest.raises(MalformedSourceError):
                await http_get_text("https://a.example/unl", 5.0)


class TestSourceFromDict:
    """Test source serialization."""

    def test_round_trip_each_kind(self, tmp_path, keys):
        sources = [
            StaticStringsSource(name="inline", lines=keys[:2]),
            StaticFileSource(path=str(tmp_path / "list.txt")),
            DynamicUrlSource(url="https://a.example/unl"),
        ]
        for source in sources:
            assert source_from_dict(source.to_dict()) == source

    def test_attaches_transport(self, transport):
        source = source_from_dict({"kind": "dynamic_url", "url": "https://a.example"}, transport)
        assert source.transport is transport

    def test_unknown_kind(self):
        with pytest.raises(ConfigError):
            source_from_dict({"kind": "carrier_pigeon", "name": "x"})

    def test_missing_field(self):
        with pytest.raises(ConfigError):
            source_from_dict({"kind": "static_strings"})
