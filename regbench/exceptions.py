"""Exceptions raised throughout the project.

Classes:
    RegistrationBenchmarkError: Base class of all project exceptions.
    LoadError: Input point cloud is missing, malformed or empty.
    SaveError: Output point cloud could not be written.
    AlignmentFailure: A registration algorithm raised during alignment.
    ConfigError: A registration algorithm was given an invalid option value.
    DiagnosticsUnavailable: Process memory counters can't be read.
"""


class RegistrationBenchmarkError(Exception):
    """Base class of all project exceptions."""


class LoadError(RegistrationBenchmarkError):
    """Input point cloud is missing, malformed or empty."""

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"failed to load {filename}: {reason}")
        self.filename = filename
        self.reason = reason


class SaveError(RegistrationBenchmarkError):
    """Output point cloud could not be written."""

    def __init__(self, filename: str, reason: str = "destination not writable") -> None:
        super().__init__(f"failed to save {filename}: {reason}")
        self.filename = filename
        self.reason = reason


class AlignmentFailure(RegistrationBenchmarkError):
    """A registration algorithm raised during alignment."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"{name} failed: {reason}")
        self.name = name
        self.reason = reason


class ConfigError(RegistrationBenchmarkError, ValueError):
    """A registration algorithm was given an invalid option value."""


class DiagnosticsUnavailable(RegistrationBenchmarkError):
    """Process memory counters can't be read."""
