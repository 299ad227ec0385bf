from typing import Optional


class MigrationError(Exception):
    """Base class for every error raised by pvc-migrate."""


class SetupError(MigrationError):
    """The run cannot start: no cluster access or candidates cannot be listed."""


class StageError(MigrationError):
    """A single item failed the step it was attempting."""


class DataMoveError(StageError):
    """The external data mover failed or was interrupted."""

    def __init__(self, message: str, output: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode

    def __str__(self):
        base = super().__str__()
        if self.output:
            return f"{base}: {self.output.strip()}"
        return base


class MigrationCancelled(StageError):
    """Cancellation was requested before the step could run."""
