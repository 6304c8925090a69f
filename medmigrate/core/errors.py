"""
Exception hierarchy for medmigrate.

Messages raised from these classes must never contain record values:
only field names, entity types, codes and counts.
"""

from __future__ import annotations

from typing import Any


class MigrationError(Exception):
    """Base class for all migration errors."""


class TransformError(MigrationError):
    """Raised when a transform name is not in the allowlist."""


class MappingSpecError(MigrationError):
    """Raised when a MappingSpec fails structural validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ArtifactIntegrityError(MigrationError):
    """Raised when stored artifact bytes do not match their recorded hash."""


class ArtifactNotFoundError(MigrationError):
    """Raised when an artifact reference cannot be resolved."""


class LLMUnavailableError(MigrationError):
    """Raised when no configured AI backend can serve a request."""


class CredentialError(MigrationError):
    """Raised when credential encryption is misconfigured or fails."""


class PhaseError(MigrationError):
    """Raised inside a pipeline phase; converted to a PhaseOutcome by the orchestrator."""

    def __init__(self, phase: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(f"{phase}: {reason}")
        self.phase = phase
        self.reason = reason
        self.details = details or {}


class RunNotFoundError(MigrationError):
    """Raised when a migration run ID is unknown."""
