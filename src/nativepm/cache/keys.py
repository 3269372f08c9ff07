"""Cache key derivation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from nativepm.abi import ABIFingerprint
from nativepm.config import BuildConfiguration


@dataclass(frozen=True, slots=True, order=True)
class CacheKey:
    package: str
    version: str
    fingerprint: ABIFingerprint
    config_hash: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "version": self.version,
            "fingerprint": self.fingerprint.to_record(),
            "config_hash": self.config_hash,
        }

    def serialize(self) -> str:
        return json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.serialize().encode("utf-8")).hexdigest()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CacheKey:
        return cls(
            package=str(payload["package"]),
            version=str(payload["version"]),
            fingerprint=ABIFingerprint.from_record(payload["fingerprint"]),
            config_hash=str(payload["config_hash"]),
        )


def config_hash(config: BuildConfiguration) -> str:
    """Hash the parts of *config* that change the produced artifact.

    Verbosity only changes build logs and is left out.
    """
    payload = config.to_payload()
    payload.pop("verbose")
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def cache_key(
    package: str,
    version: str,
    fingerprint: ABIFingerprint,
    config: BuildConfiguration,
) -> CacheKey:
    return CacheKey(
        package=package,
        version=version,
        fingerprint=fingerprint,
        config_hash=config_hash(config),
    )
