from __future__ import annotations

import asyncio

import aiohttp
import pytest

from override_tools.registry import (
    fetch_package_manifest,
    fetch_packument,
    make_purl,
    pick_best_version,
    registry_package_url,
    resolve_version,
    split_package_spec,
    version_satisfies_range,
)


@pytest.mark.parametrize(
    ("version", "range_str", "expected"),
    [
        ("1.2.3", "*", True),
        ("1.2.3", "", True),
        ("1.9.0", "1.x", True),
        ("2.0.0", "1.x", False),
        ("1.4.0", "^1.2.3", True),
        ("2.0.0", "^1.2.3", False),
        ("0.2.5", "^0.2.3", True),
        ("0.3.0", "^0.2.3", False),
        ("1.2.9", "~1.2.3", True),
        ("1.3.0", "~1.2.3", False),
        ("1.3.0", ">1.2", True),
        ("1.2.9", ">1.2", False),
        ("1.9.9", "<=1", True),
        ("2.0.0", "<=1", False),
        ("1.5.0", ">=1.2.3 <2.0.0", True),
        ("2.0.0", ">=1.2.3 <2.0.0", False),
        ("2.5.0", "1.0.0 || ^2.0.0", True),
        ("3.0.0", "1.0.0 || ^2.0.0", False),
        ("1.1.4", "=1.1.4", True),
    ],
)
def test_version_satisfies_range(version: str, range_str: str, expected: bool) -> None:
    assert version_satisfies_range(version, range_str) is expected


def test_pick_best_version_ignores_prereleases_unless_asked() -> None:
    versions = ["1.0.0", "1.5.0", "1.2.0", "2.0.0-beta.1"]

    assert pick_best_version(versions, "^1") == "1.5.0"
    assert pick_best_version(versions, ">=1.0.0") == "1.5.0"
    assert pick_best_version(versions, ">=2.0.0-0") == "2.0.0-beta.1"
    assert pick_best_version(versions, "^3") is None


PACKUMENT = {
    "dist-tags": {"latest": "1.1.4", "next": "2.0.0"},
    "versions": {
        "1.0.0": {"name": "is-regex", "version": "1.0.0"},
        "1.1.4": {"name": "is-regex", "version": "1.1.4", "license": "MIT"},
    },
}


def test_resolve_version_prefers_dist_tags_then_exact_then_range() -> None:
    assert resolve_version(PACKUMENT, "latest") == "1.1.4"
    assert resolve_version(PACKUMENT, "") == "1.1.4"
    assert resolve_version(PACKUMENT, "next") is None
    assert resolve_version(PACKUMENT, "1.0.0") == "1.0.0"
    assert resolve_version(PACKUMENT, "~1.0") == "1.0.0"


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ("is-regex", ("is-regex", "latest")),
        ("is-regex@^1.1", ("is-regex", "^1.1")),
        ("@hyrious/bun.lockb@0.0.4", ("@hyrious/bun.lockb", "0.0.4")),
        ("@hyrious/bun.lockb", ("@hyrious/bun.lockb", "latest")),
        ("a@", ("a", "latest")),
    ],
)
def test_split_package_spec(spec: str, expected: tuple[str, str]) -> None:
    assert split_package_spec(spec) == expected


def test_urls_and_purls_encode_scopes() -> None:
    assert registry_package_url("https://registry.npmjs.org/", "@a/b") == "https://registry.npmjs.org/@a%2Fb"
    assert registry_package_url("https://registry.npmjs.org", "x") == "https://registry.npmjs.org/x"
    assert make_purl("@socketregistry/is-regex", "1.0.5") == "pkg:npm/%40socketregistry/is-regex@1.0.5"
    assert make_purl("is-regex", "1.1.4") == "pkg:npm/is-regex@1.1.4"


class FakeResponse:
    def __init__(self, status: int, payload) -> None:
        self.status = status
        self.payload = payload

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.urls: list[str] = []

    def get(self, url: str, headers=None):
        self.urls.append(url)
        response = self.responses.get(url)
        if isinstance(response, Exception):
            raise response
        return response or FakeResponse(404, None)


REGISTRY = "https://registry.example.com"


def test_fetch_package_manifest_resolves_range() -> None:
    session = FakeSession({f"{REGISTRY}/is-regex": FakeResponse(200, PACKUMENT)})

    manifest = asyncio.run(fetch_package_manifest(session, "is-regex@^1", REGISTRY))

    assert manifest == PACKUMENT["versions"]["1.1.4"]
    assert session.urls == [f"{REGISTRY}/is-regex"]


@pytest.mark.parametrize(
    "response",
    [
        None,
        FakeResponse(500, {}),
        FakeResponse(200, ValueError("not json")),
        FakeResponse(200, ["not", "a", "dict"]),
        aiohttp.ClientConnectionError("down"),
        asyncio.TimeoutError(),
    ],
)
def test_fetch_packument_returns_none_on_failure(response) -> None:
    responses = {} if response is None else {f"{REGISTRY}/@a%2Fb": response}

    assert asyncio.run(fetch_packument(FakeSession(responses), "@a/b", REGISTRY)) is None


def test_fetch_package_manifest_unknown_version() -> None:
    session = FakeSession({f"{REGISTRY}/is-regex": FakeResponse(200, PACKUMENT)})

    assert asyncio.run(fetch_package_manifest(session, "is-regex@^9", REGISTRY)) is None
