"""
Exception classes for cartingest.

Exception Hierarchy:
    CartIngestError (base)
        ConfigError - invalid settings, aborts the run
        InvalidPattern - metadata pattern does not compile, aborts the run
        NotAContainer - file is not a WAV container
        TruncatedFile - data chunk runs past end of file (unrepairable)
        RepairError - a repair attempt failed
        EncodeError - the encoder collaborator failed
        CatalogError - catalog read/write failure
            NoCart - no cart number could be allocated
            NoCut - no cut slot could be allocated
"""

from typing import Any, Dict, Optional


class CartIngestError(Exception):
    """
    Base exception for all cartingest errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (path, cart, ...).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigError(CartIngestError):
    """Raised for invalid settings. Stops the run before any file is processed."""
    pass


class InvalidPattern(CartIngestError):
    """
    Raised when a metadata pattern cannot be compiled.

    Common causes:
        - two placeholders with no literal separator between them ("%a%t")
        - unknown placeholder letter ("%q")
        - a placeholder used twice
        - a trailing lone '%'
    """
    pass


class NotAContainer(CartIngestError):
    """Raised when a file does not carry a RIFF/WAVE signature."""
    pass


class TruncatedFile(CartIngestError):
    """Raised when the declared data chunk extends past the end of the file."""
    pass


class RepairError(CartIngestError):
    """Raised when a container repair cannot be completed."""
    pass


class EncodeError(CartIngestError):
    """Raised when the encoder collaborator fails to produce output."""
    pass


class CatalogError(CartIngestError):
    """Raised for catalog read/write failures."""
    pass


class NoCart(CatalogError):
    """
    Raised when a cart number cannot be allocated.

    Common causes:
        - the group's cart range is exhausted
        - an explicit cart number lies outside the group's enforced range
        - an explicit cart number belongs to a different group
    """
    pass


class NoCut(CatalogError):
    """Raised when no further cut can be created under a cart."""
    pass
