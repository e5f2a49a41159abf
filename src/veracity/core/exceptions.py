# SPDX-License-Identifier: MPL-2.0
"""Custom exceptions for the Veracity audit engine.

Most of these never escape an audit run: failures local to one attestation or
to one subtask are caught and turned into findings. Only configuration errors
abort a run.
"""

from typing import Any, Dict, Optional


class VeracityError(Exception):
    """Base exception for all Veracity errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FetchFailed(VeracityError):
    """Raised when the registry, attestation store or source host cannot be read."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize the fetch failure.

        Args:
            message: Error message
            url: The URL that failed
            status: HTTP status, when a response was received
            retryable: Whether the failure belongs to the transient subset
            details: Optional dictionary with additional error details
        """
        merged = {"url": url, "status": status, "retryable": retryable}
        merged.update(details or {})
        super().__init__(message, merged)
        self.url = url
        self.status = status
        self.retryable = retryable


class MalformedInput(VeracityError):
    """Base exception for untrusted input that cannot be parsed."""

    pass


class MalformedArtifact(MalformedInput):
    """Raised when an artifact is not a readable crate archive."""

    pass


class MalformedAttestation(MalformedInput):
    """Raised when an attestation record is structurally invalid."""

    pass


class InvalidKeyError(VeracityError):
    """Raised when issuer key material is invalid or unsupported."""

    pass


class VerificationError(VeracityError):
    """Base exception for failed provenance checks."""

    code = "provenance.failed"


class SignatureInvalid(VerificationError):
    """Raised when no envelope signature verifies."""

    code = "provenance.signature_invalid"


class IssuerUntrusted(VerificationError):
    """Raised when the signer is not bound to a trusted issuer."""

    code = "provenance.issuer_untrusted"


class DigestMismatch(VerificationError):
    """Raised when the attested digest differs from the fetched artifact."""

    code = "provenance.digest_mismatch"


class SourceMismatch(VerificationError):
    """Raised when the claimed source commit is unresolvable or inconsistent."""

    code = "provenance.source_mismatch"


class BuildError(VeracityError):
    """Base exception for rebuild tooling failures."""

    pass


class BuildFailed(BuildError):
    """Raised when the build toolchain exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        exit_status: Optional[int] = None,
        logs: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.exit_status = exit_status
        self.logs = logs


class BuildTimedOut(BuildError):
    """Raised when a build exceeds its time budget."""

    def __init__(
        self,
        message: str,
        timeout: float,
        logs: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.timeout = timeout
        self.logs = logs


class SandboxSetupFailed(BuildError):
    """Raised when an isolated build environment cannot be prepared."""

    pass


class ConfigurationError(VeracityError):
    """Raised when configuration is invalid or missing."""

    pass
