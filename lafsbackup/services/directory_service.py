"""Directory capabilities, content-addressed by their listing."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from ..backupdb import BackupDB, utcnow
from ..client import Listing, listing_items

log = logging.getLogger(__name__)

# Children plus per-child metadata; the metadata is not part of the cache key.
UploadDirectoryFn = Callable[[list[tuple[str, str]], Mapping[str, Mapping[str, int]]], str]


def listing_hash(listing: Listing) -> str:
    """Stable hash of a directory listing; child order does not matter."""

    canonical = json.dumps(listing_items(listing), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class DirectoryResolution:
    dirhash: str
    capability: str
    reused: bool


class DirectoryCapBuilder:
    """Resolves a directory capability from its children's capabilities.

    Children must be resolved first: the cache key is a function of their
    capabilities, so directories are built bottom-up.
    """

    def __init__(self, db: BackupDB, upload_directory: UploadDirectoryFn) -> None:
        self.db = db
        self.upload_directory = upload_directory

    def resolve(self, listing: Listing) -> str:
        return self.resolve_entry(listing).capability

    def resolve_entry(
        self,
        listing: Listing,
        *,
        label: str | None = None,
        metadata: Mapping[str, Mapping[str, int]] | None = None,
    ) -> DirectoryResolution:
        items = listing_items(listing)
        dirhash = listing_hash(items)
        cached = self.db.directories.lookup(dirhash)
        if cached is not None:
            log.info("Reusing directory '%s'", label or dirhash)
            return DirectoryResolution(dirhash, cached.capability, True)
        log.info("Uploading dir '%s'", label or dirhash)
        capability = self.upload_directory(items, metadata or {})
        self.db.directories.store(dirhash, capability, utcnow())
        log.info("'%s' -> '%s'", label or dirhash, capability)
        return DirectoryResolution(dirhash, capability, False)
