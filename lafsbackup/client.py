"""HTTP client for the Tahoe-LAFS web gateway."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Iterable, Mapping, Tuple, Union
from urllib.parse import quote

import httpx

from .config import DEFAULT_NODE_URL, DEFAULT_TIMEOUT
from .errors import BackendUnavailable, TransientIOError

log = logging.getLogger(__name__)

Listing = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

DIRNODE = "dirnode"
FILENODE = "filenode"

_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MAX_RETRIES = 2
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 4.0


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _backoff_delay(attempt: int) -> float:
    return min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * (2**attempt))


def node_type(capability: str) -> str:
    """Tahoe node type for a child capability."""
    return DIRNODE if capability.startswith("URI:DIR") else FILENODE


def listing_items(listing: Listing) -> list[tuple[str, str]]:
    """Return the (name, capability) pairs of *listing* sorted by name."""

    items = listing.items() if isinstance(listing, Mapping) else listing
    pairs: dict[str, str] = {}
    for name, capability in items:
        if name in pairs and pairs[name] != capability:
            raise ValueError(f"Duplicate child name in listing: {name!r}")
        pairs[name] = capability
    return sorted(pairs.items())


def directory_payload(
    listing: Listing,
    metadata: Mapping[str, Mapping[str, int]] | None = None,
) -> dict[str, list[object]]:
    """Build the children JSON accepted by ``t=mkdir-immutable``."""

    metadata = metadata or {}
    return {
        name: [
            node_type(capability),
            {"ro_uri": capability, "metadata": dict(metadata.get(name, {}))},
        ]
        for name, capability in listing_items(listing)
    }


class TahoeClient:
    """Uploads immutable files and directories and links archives.

    ``httpx.Client`` is safe to share between threads, so one instance serves
    every worker of a backup run.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_NODE_URL).rstrip("/")
        client_kwargs: dict[str, object] = {
            "base_url": self.base_url,
            "timeout": timeout,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.Client(**client_kwargs)
        log.debug("Tahoe client base_url=%s", self.base_url)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TahoeClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def upload(self, content: bytes) -> str:
        """PUT /uri with *content*; returns the immutable file capability."""
        return self._request_cap("PUT", "/uri", content=lambda: content)

    def upload_file(self, path: Path | str) -> str:
        """Stream the file at *path* to PUT /uri."""

        file_path = Path(path)

        def _body():
            try:
                return file_path.open("rb")
            except OSError as exc:
                raise TransientIOError(
                    f"Couldn't open file: {exc}",
                    path=str(file_path),
                ) from exc

        log.info("Uploading file '%s'", file_path)
        try:
            return self._request_cap("PUT", "/uri", content=_body)
        except BackendUnavailable as exc:
            exc.path = str(file_path)
            raise

    def upload_directory(
        self,
        listing: Listing,
        metadata: Mapping[str, Mapping[str, int]] | None = None,
    ) -> str:
        """POST /uri?t=mkdir-immutable with the children of *listing*."""

        body = json.dumps(directory_payload(listing, metadata)).encode("utf-8")
        return self._request_cap(
            "POST",
            "/uri",
            params={"t": "mkdir-immutable"},
            content=lambda: body,
        )

    def attach(self, target: str, name: str, capability: str) -> None:
        """Link *capability* as *name* (slash separated) below the *target* dircap."""

        child = "/".join(quote(part, safe="") for part in name.split("/") if part)
        url = f"/uri/{quote(target, safe=':')}/{child}"
        self._request_cap(
            "PUT",
            url,
            params={"t": "uri"},
            content=lambda: capability.encode("utf-8"),
        )
        log.info("Linked '%s' under target", name)

    def _request_cap(self, method: str, url: str, *, content, params=None) -> str:
        attempt = 0
        while True:
            body = content()
            try:
                response = self._client.request(method, url, params=params, content=body)
            except httpx.HTTPError as exc:
                if attempt < _MAX_RETRIES and isinstance(exc, httpx.TransportError):
                    _sleep(_backoff_delay(attempt))
                    attempt += 1
                    continue
                raise BackendUnavailable(f"Tahoe request failed: {exc}") from exc
            except OSError as exc:
                raise TransientIOError(f"Couldn't read upload body: {exc}") from exc
            finally:
                close = getattr(body, "close", None)
                if close is not None:
                    close()
            if response.is_success:
                return response.text.strip()
            if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRIES:
                _sleep(_backoff_delay(attempt))
                attempt += 1
                continue
            raise BackendUnavailable(
                f"Tahoe returned {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
