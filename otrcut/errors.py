from __future__ import annotations

from pathlib import Path


class OtrCutError(RuntimeError):
    """Base class for all errors raised by otrcut."""


class ScanError(OtrCutError):
    """A scanned file does not follow the OTR naming convention."""

    def __init__(self, path: str | Path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class CatalogUnavailableError(OtrCutError):
    """Not a single input location could be scanned."""


class FetchError(OtrCutError):
    """A cutlist resource could not be downloaded or decoded."""


class SpecIncompleteError(OtrCutError):
    """A cutlist lacks information that is required to cut with it."""


class ToolInvocationError(OtrCutError):
    """An external tool exited with a non-zero status."""

    def __init__(self, message: str, *, returncode: int | None = None, diagnostics_path: Path | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.diagnostics_path = diagnostics_path
