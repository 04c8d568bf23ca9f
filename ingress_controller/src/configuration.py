from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any

from ingress_controller.src.certs import Certificate
from ingress_controller.src.routes import Route, sort_routes


@dataclass
class GlobalSettings:
    """Cluster-wide gateway settings applied through ``set_config``.

    ``certificates`` are offered to the certificate selector on every commit
    alongside the ones referenced by Ingress and Gateway objects.
    """

    authenticate_service_url: str = ""
    certificates: list[Certificate] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.authenticate_service_url:
            out["authenticate_service_url"] = self.authenticate_service_url
        if self.certificates:
            out["certificates"] = [cert.to_dict() for cert in self.certificates]
        if self.options:
            out["options"] = copy.deepcopy(self.options)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GlobalSettings:
        return cls(
            authenticate_service_url=data.get("authenticate_service_url", ""),
            certificates=[Certificate.from_dict(item) for item in data.get("certificates", [])],
            options=copy.deepcopy(data.get("options", {})),
        )


@dataclass
class Configuration:
    """The single persisted record consumed by the gateway."""

    routes: list[Route] = field(default_factory=list)
    certificates: list[Certificate] = field(default_factory=list)
    settings: GlobalSettings = field(default_factory=GlobalSettings)

    def clone(self) -> Configuration:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "routes": [route.to_dict() for route in self.routes],
            "certificates": [cert.to_dict() for cert in self.certificates],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        return cls(
            routes=[Route.from_dict(item) for item in data.get("routes") or []],
            certificates=[Certificate.from_dict(item) for item in data.get("certificates") or []],
            settings=GlobalSettings.from_dict(data.get("settings") or {}),
        )

    def dumps(self) -> str:
        """Canonical JSON text; equal configurations produce identical strings."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def loads(cls, text: str) -> Configuration:
        return cls.from_dict(json.loads(text))


def ensure_deterministic_order(cfg: Configuration) -> Configuration:
    """Sort routes by match key and certificates by ID, in place.

    Idempotent.  Run before every validate and persist so logically equal
    configurations serialise byte-for-byte identically.
    """
    cfg.routes = sort_routes(cfg.routes)
    cfg.certificates = sorted(
        cfg.certificates, key=lambda cert: (cert.id, cert.cert_bytes, cert.key_bytes)
    )
    return cfg
