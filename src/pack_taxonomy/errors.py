"""Exception types raised by pack_taxonomy services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class PackTaxonomyError(Exception):
    """Base class for all pack_taxonomy errors."""


class TaxonomyLoadError(PackTaxonomyError):
    """A taxonomy file could not be read, parsed or validated."""


class ConfigError(PackTaxonomyError):
    """Configuration or pack input failed schema validation."""


class AIAdapterError(PackTaxonomyError):
    """The AI fallback adapter failed or returned an unusable response."""


class StepFailure(PackTaxonomyError):
    """A pipeline step could not run.

    ``recoverable`` tells the caller whether earlier results (for example
    the classifications) remain valid and the step can simply be retried
    with better input.
    """

    def __init__(self, code: str, message: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def to_dict(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if extra:
            data.update(extra)
        return data
