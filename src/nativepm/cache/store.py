"""Artifact cache stores keyed by ABI-aware cache keys.

Entries are append-only. ``put`` is first-writer-wins: when two writers
race on one key, the later one gets the stored entry back and its own
artifact is discarded. A manifest whose artifact has been pruned no longer
holds its key; the next writer replaces it.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from nativepm.abi import ABIFingerprint, is_compatible
from nativepm.cache.keys import CacheKey
from nativepm.errors import CacheIntegrityError, ValidationError


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: CacheKey
    artifact_path: Path
    checksum: str
    created_at: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "key": self.key.to_payload(),
            "artifact_path": str(self.artifact_path),
            "checksum": self.checksum,
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CacheEntry:
        return cls(
            key=CacheKey.from_payload(payload["key"]),
            artifact_path=Path(payload["artifact_path"]),
            checksum=str(payload["checksum"]),
            created_at=str(payload["created_at"]),
        )


class ArtifactCache(Protocol):
    def get(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry stored under *key*, if any."""

    def put(self, key: CacheKey, entry: CacheEntry) -> CacheEntry:
        """Store *entry* unless *key* is taken; return the entry that holds the key."""

    def entries(self, package: str, version: str) -> list[CacheEntry]:
        """Return every entry for one package version."""

    def find_compatible(
        self,
        package: str,
        version: str,
        required: ABIFingerprint,
        *,
        config_hash: str | None = None,
    ) -> CacheEntry | None:
        """Return an entry whose fingerprint satisfies *required*."""

    def store_artifact(self, key: CacheKey, source_dir: Path) -> CacheEntry:
        """Copy a staged artifact tree into the cache and register it."""


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


def tree_checksum(root: Path) -> str:
    """Content digest of a file or directory tree, independent of mtimes."""
    digest = hashlib.sha256()
    if root.is_file():
        digest.update(root.read_bytes())
        return digest.hexdigest()
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.is_symlink():
            digest.update(f"L:{rel}:{os.readlink(path)}\0".encode())
        elif path.is_file():
            digest.update(f"F:{rel}\0".encode())
            digest.update(path.read_bytes())
            digest.update(b"\0")
        elif path.is_dir():
            digest.update(f"D:{rel}\0".encode())
    return digest.hexdigest()


def rank_compatible(
    entries: Iterable[CacheEntry],
    required: ABIFingerprint,
    *,
    config_hash: str | None = None,
) -> list[CacheEntry]:
    """Order usable entries: exact fingerprint first, then lowest sufficient standard."""
    usable = [
        entry
        for entry in entries
        if (config_hash is None or entry.key.config_hash == config_hash)
        and is_compatible(required, entry.key.fingerprint)
    ]
    return sorted(
        usable,
        key=lambda entry: (
            entry.key.fingerprint != required,
            entry.key.fingerprint.cxx_standard,
            entry.created_at,
            entry.key.digest,
        ),
    )


def _copy_tree(source: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        dest.mkdir(parents=True)
        shutil.copy2(source, dest / source.name)


class MemoryArtifactCache:
    """In-process cache index; artifacts are copied under *artifact_root*."""

    def __init__(self, artifact_root: str | Path | None = None) -> None:
        self.artifact_root = Path(artifact_root) if artifact_root is not None else None
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: CacheKey, entry: CacheEntry) -> CacheEntry:
        if entry.key != key:
            raise ValidationError(
                "Cache entry does not belong to the given key.",
                context={"operation": "cache_put", "package": key.package},
            )
        with self._lock:
            return self._entries.setdefault(key, entry)

    def entries(self, package: str, version: str) -> list[CacheEntry]:
        with self._lock:
            found = [
                entry
                for key, entry in self._entries.items()
                if key.package == package and key.version == version
            ]
        return sorted(found, key=lambda entry: entry.created_at)

    def find_compatible(
        self,
        package: str,
        version: str,
        required: ABIFingerprint,
        *,
        config_hash: str | None = None,
    ) -> CacheEntry | None:
        ranked = rank_compatible(
            self.entries(package, version), required, config_hash=config_hash
        )
        return ranked[0] if ranked else None

    def store_artifact(self, key: CacheKey, source_dir: Path) -> CacheEntry:
        if self.artifact_root is None:
            raise ValidationError(
                "This cache has no artifact storage configured.",
                hint="Construct MemoryArtifactCache(artifact_root=...) to store artifacts.",
                context={"operation": "cache_store", "package": key.package},
            )
        dest = self.artifact_root / f"{key.digest}-{uuid.uuid4().hex[:12]}"
        _copy_tree(source_dir, dest)
        entry = CacheEntry(
            key=key,
            artifact_path=dest,
            checksum=tree_checksum(dest),
            created_at=utc_timestamp(),
        )
        winner = self.put(key, entry)
        if winner != entry:
            shutil.rmtree(dest, ignore_errors=True)
        return winner


class FileArtifactCache:
    """Filesystem cache with one JSON manifest per entry.

    Layout::

        <root>/entries/<package>/<version>/<key digest>.json
        <root>/artifacts/<key digest>-<token>/...
    """

    def __init__(self, root: str | Path, *, verify: bool = True) -> None:
        self.root = Path(root)
        self.verify = verify
        (self.root / "entries").mkdir(parents=True, exist_ok=True)
        (self.root / "artifacts").mkdir(parents=True, exist_ok=True)

    def _package_dir(self, package: str, version: str) -> Path:
        return self.root / "entries" / quote(package, safe="") / quote(version, safe="")

    def _entry_path(self, key: CacheKey) -> Path:
        return self._package_dir(key.package, key.version) / f"{key.digest}.json"

    def get(self, key: CacheKey) -> CacheEntry | None:
        path = self._entry_path(key)
        if not path.exists():
            return None
        entry = self._read_entry(path)
        if entry.key != key:
            raise CacheIntegrityError(
                "Cache manifest key mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key.digest, "path": str(path)},
            )
        if not entry.artifact_path.exists():
            return None
        if self.verify and tree_checksum(entry.artifact_path) != entry.checksum:
            raise CacheIntegrityError(
                "Cache artifact digest mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key.digest, "path": str(path)},
            )
        return entry

    def put(self, key: CacheKey, entry: CacheEntry) -> CacheEntry:
        if entry.key != key:
            raise ValidationError(
                "Cache entry does not belong to the given key.",
                context={"operation": "cache_put", "package": key.package},
            )
        path = self._entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = path.with_name(f".{key.digest}.{uuid.uuid4().hex}.tmp")
        staging.write_text(
            json.dumps(entry.to_payload(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        try:
            # link() refuses to replace an existing manifest, so exactly one writer publishes.
            os.link(staging, path)
        except FileExistsError:
            existing = self._read_entry(path)
            if existing.artifact_path.exists():
                return existing
            # The stored artifact was pruned; the fresh one takes over the key.
            os.replace(staging, path)
        finally:
            staging.unlink(missing_ok=True)
        return entry

    def entries(self, package: str, version: str) -> list[CacheEntry]:
        directory = self._package_dir(package, version)
        if not directory.exists():
            return []
        found = [self._read_entry(path) for path in sorted(directory.glob("*.json"))]
        return sorted(found, key=lambda entry: entry.created_at)

    def find_compatible(
        self,
        package: str,
        version: str,
        required: ABIFingerprint,
        *,
        config_hash: str | None = None,
    ) -> CacheEntry | None:
        for entry in rank_compatible(
            self.entries(package, version), required, config_hash=config_hash
        ):
            if self.get(entry.key) is not None:
                return entry
        return None

    def store_artifact(self, key: CacheKey, source_dir: Path) -> CacheEntry:
        dest = self.root / "artifacts" / f"{key.digest}-{uuid.uuid4().hex[:12]}"
        _copy_tree(source_dir, dest)
        entry = CacheEntry(
            key=key,
            artifact_path=dest,
            checksum=tree_checksum(dest),
            created_at=utc_timestamp(),
        )
        winner = self.put(key, entry)
        if winner != entry:
            shutil.rmtree(dest, ignore_errors=True)
        return winner

    def _read_entry(self, path: Path) -> CacheEntry:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheIntegrityError(
                "Cache manifest is not valid JSON.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise CacheIntegrityError(
                "Cache manifest has invalid structure.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            )
        try:
            return CacheEntry.from_payload(parsed)
        except (KeyError, TypeError, ValidationError) as exc:
            raise CacheIntegrityError(
                "Cache manifest is missing required fields.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            ) from exc


__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "FileArtifactCache",
    "MemoryArtifactCache",
    "rank_compatible",
    "tree_checksum",
]
