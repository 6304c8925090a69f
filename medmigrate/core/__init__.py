"""medmigrate Core Module."""

from medmigrate.core.errors import (
    ArtifactIntegrityError,
    ArtifactNotFoundError,
    CredentialError,
    LLMUnavailableError,
    MappingSpecError,
    MigrationError,
    PhaseError,
    RunNotFoundError,
    TransformError,
)
from medmigrate.core.logging import (
    ErrorContext,
    SentryIntegration,
    clear_run_context,
    get_logger,
    log_error,
    set_run_context,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_error",
    "set_run_context",
    "clear_run_context",
    "SentryIntegration",
    "ErrorContext",
    "MigrationError",
    "TransformError",
    "MappingSpecError",
    "ArtifactIntegrityError",
    "ArtifactNotFoundError",
    "LLMUnavailableError",
    "CredentialError",
    "PhaseError",
    "RunNotFoundError",
]
