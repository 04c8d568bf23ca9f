from __future__ import annotations


class ReconcileError(RuntimeError):
    """Base class for failures raised while turning cluster state into configuration."""


class SourceError(ReconcileError):
    """A single source object (Ingress, HTTPRoute) is malformed or unresolvable."""


class DuplicateRouteError(ReconcileError):
    """Two routes produced in one synthesis pass share the same ID."""


class ValidationError(ReconcileError):
    """The merged configuration was rejected by the validator and not committed."""


class StoreError(ReconcileError):
    """The remote configuration record could not be read or written."""


class OperationCancelled(ReconcileError):
    """The caller gave up while waiting on the initial-sync gate or the sync lock."""


class ConfigError(ValueError):
    """Raised when controller settings are invalid."""


class CertificateError(ValueError):
    """Raised when certificate bytes cannot be decoded as a PEM X.509 certificate."""
