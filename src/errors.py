"""Exception taxonomy for the weekly trainer, bootstrap scheduler and recalibration."""

from __future__ import annotations


class ForecasterError(Exception):
    """Base class for trainer errors surfaced to the CLI."""


class MissingArtifactError(ForecasterError, FileNotFoundError):
    """Raised when a required model/prediction artifact is absent."""

    def __init__(self, path, kind: str = "artifact"):
        self.path = str(path)
        self.kind = kind
        super().__init__(f"Expected {kind} missing: {self.path}")


class DataSourceUnavailable(ForecasterError):
    """Raised by a data source when an upstream table cannot be read."""

    def __init__(self, table: str, season: int, reason: str = ""):
        self.table = table
        self.season = season
        self.reason = reason
        message = f"{table} for season {season} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BootstrapRevisionMismatch(ForecasterError):
    """Recorded bootstrap revision differs from the running code's revision."""

    def __init__(self, key: str, recorded, expected: str):
        self.key = key
        self.recorded = recorded
        self.expected = expected
        super().__init__(
            f"bootstrap '{key}' recorded revision {recorded!r}, expected {expected!r}"
        )


class ExplicitWindowInvalid(ForecasterError, ValueError):
    """Raised when a user-specified season window cannot be trained."""


class StateCorruption(ForecasterError):
    """Raised when training_state.json is unreadable or malformed."""


class ArtifactValidationError(ForecasterError, ValueError):
    """Raised when an artifact payload fails its schema checks."""

    def __init__(self, kind: str, errors):
        self.kind = kind
        self.errors = list(errors)
        preview = "; ".join(self.errors[:5])
        super().__init__(f"{kind} artifact failed validation: {preview}")
