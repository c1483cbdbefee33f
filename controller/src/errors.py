from __future__ import annotations


class ArgoosError(Exception):
    """Base class for domain errors.

    ``kind`` is a stable discriminator so callers (and the HTTP layer) can
    branch on the error type without parsing messages.
    """

    kind = "ArgoosError"


class AuthenticationFailure(ArgoosError):
    """Raised when the shared-secret token header is missing or wrong."""

    kind = "AuthenticationFailure"

    def __init__(self, message: str = "Bad Token") -> None:
        super().__init__(message)


class MalformedPayload(ArgoosError):
    """Raised when a registry notification body cannot be decoded."""

    kind = "MalformedPayload"


class ClusterUnavailable(ArgoosError):
    """Raised when the cluster API cannot be reached or listed."""

    kind = "ClusterUnavailable"


class PartialBatchFailure(ArgoosError):
    """Records one event of a multi-event batch that failed to dispatch."""

    kind = "PartialBatchFailure"

    def __init__(self, reference: str, cause: BaseException) -> None:
        super().__init__(f"dispatch failed for {reference}: {cause}")
        self.reference = reference
        self.cause = cause
