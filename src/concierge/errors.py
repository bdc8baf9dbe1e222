"""Exception types raised across the concierge package."""

from __future__ import annotations


class ConciergeError(Exception):
    """Base class for all concierge errors."""


class RecognizerNotReady(ConciergeError):
    """Listening was requested before a microphone session was provisioned."""


class AvatarProvisioningError(ConciergeError):
    """Relay credentials for the avatar peer connection could not be obtained."""


class CatalogueError(ConciergeError):
    """The retrieval source catalogue is missing or invalid."""
