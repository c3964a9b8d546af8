from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.booking.catalog import Resource
    from app.core.models import Reservation


class BookingError(ValueError):
    """Base class for booking failures.

    Subclasses ``ValueError`` so callers that already guard service calls with
    ``except ValueError`` keep working.
    """

    kind = "error"
    http_status = 400
    retryable = False


class Conflict(BookingError):
    kind = "conflict"
    http_status = 409


class NotFound(BookingError):
    kind = "not_found"
    http_status = 404


class ValidationError(BookingError):
    kind = "validation"
    http_status = 400


class DeliveryFailure(BookingError):
    kind = "delivery_failure"
    http_status = 502
    retryable = True


class PersistenceFailure(BookingError):
    kind = "persistence_failure"
    http_status = 503
    retryable = True


@dataclass
class BookingOutcome:
    """Tagged result returned by every mutating booking operation."""

    reservation: Reservation | None = None
    resource: Resource | None = None
    error: BookingError | None = None
    compensated: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str:
        return "ok" if self.error is None else self.error.kind

    @classmethod
    def success(cls, reservation: Reservation | None = None, resource: Resource | None = None) -> BookingOutcome:
        return cls(reservation=reservation, resource=resource)

    @classmethod
    def failure(
        cls,
        error: BookingError,
        compensated: bool = False,
        reservation: Reservation | None = None,
    ) -> BookingOutcome:
        return cls(reservation=reservation, error=error, compensated=compensated)

    def unwrap(self) -> Reservation | None:
        if self.error is not None:
            raise self.error
        return self.reservation
