"""Scheduling error taxonomy.

Every error carries a user-facing message (Spanish, shown as-is by the
booking pages) and the HTTP status the routers map it to.
"""


class BookingError(Exception):
    """Base exception for scheduling errors."""

    status_code = 400
    default_message = "No se pudo procesar la solicitud"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BookingError):
    """Missing or invalid client/service/time input."""

    status_code = 422
    default_message = "Datos de la cita invalidos"


class SlotTakenError(BookingError):
    """The slot was booked by someone else between availability and commit."""

    status_code = 409
    default_message = "Horario no disponible"


class NotFoundError(BookingError):
    """Unknown tenant slug, token or appointment."""

    status_code = 404
    default_message = "Cita no encontrada"


class AlreadyRespondedError(BookingError):
    """The confirmation link was already used; carries the settled status."""

    status_code = 200
    default_message = "Ya respondiste esta cita anteriormente"

    def __init__(self, status: str, message: str | None = None):
        self.status = status
        super().__init__(message or f"{self.default_message} ({status})")


class BookingPermissionError(BookingError):
    """Staff member lacks the privilege for an owner-gated action."""

    status_code = 403
    default_message = "No tienes permiso para realizar esta accion"


class InvalidTransitionError(BookingError):
    """Requested status change is not allowed from the current status."""

    status_code = 409
    default_message = "Cambio de estado no permitido"

    def __init__(self, current: str, target: str, actor: str):
        self.current = current
        self.target = target
        self.actor = actor
        super().__init__(
            f"{self.default_message}: {current} -> {target} ({actor})"
        )


class TransientNetworkError(BookingError):
    """Storage failure during a write; the caller must retry manually."""

    status_code = 503
    default_message = "Error de conexion. Intenta de nuevo."
