from __future__ import annotations


class MailflowError(RuntimeError):
    """Base error carrying a failure kind and whether a retry can help."""

    kind: str = "error"
    default_retriable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.retriable = self.default_retriable if retriable is None else retriable


class ConfigError(MailflowError):
    kind = "config"


class ValidationFailure(MailflowError):
    """Raised when a stage input or campaign brief is malformed."""

    kind = "validation"


class StageTimeoutError(MailflowError):
    """Raised when a stage exceeds its configured deadline."""

    kind = "timeout"
    default_retriable = True


class StageContractError(MailflowError):
    """Raised when a stage returns something the coordinator cannot use."""

    kind = "contract"


class ArtifactConflictError(MailflowError):
    """Raised when a stage tries to overwrite an artifact owned by another stage."""

    kind = "artifact_conflict"


class ServiceError(MailflowError):
    """Raised when an external collaborator call fails."""

    kind = "service"

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        status_code: int | None = None,
        retriable: bool | None = None,
        kind: str | None = None,
    ) -> None:
        if retriable is None and status_code is not None and not self.default_retriable:
            retriable = status_code >= 500 or status_code == 429
        super().__init__(message, kind=kind, retriable=retriable)
        self.service = service
        self.status_code = status_code


class TransientServiceError(ServiceError):
    kind = "transient"
    default_retriable = True


class RateLimitError(TransientServiceError):
    kind = "rate_limit"

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, service=service, status_code=429, retriable=True)
        self.retry_after = retry_after


class NoFlightsAvailable(ServiceError):
    """Structured empty pricing result, not a transport failure."""

    kind = "no_flights"

    def __init__(self, origin: str, destination: str, date_range: str | None = None) -> None:
        super().__init__(
            f"No flights available for {origin} -> {destination}",
            service="pricing",
            retriable=False,
        )
        self.origin = origin
        self.destination = destination
        self.date_range = date_range


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)
