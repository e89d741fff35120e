"""Confirmation link router - view and answer an appointment by token."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from salon_agenda.core.deps import get_db, http_error
from salon_agenda.core.rate_limit import PUBLIC_BOOKING_LIMIT, limiter
from salon_agenda.schemas.booking import (
    AppointmentPublicRead,
    TokenRespondRequest,
    TokenRespondResult,
)
from salon_agenda.services import confirmation_service
from salon_agenda.services.errors import BookingError

router = APIRouter()


@router.get("/{token}", response_model=AppointmentPublicRead)
@limiter.limit(PUBLIC_BOOKING_LIMIT)
def get_appointment(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
):
    try:
        view = confirmation_service.get_appointment_by_token(db, token)
    except BookingError as e:
        raise http_error(e)
    return AppointmentPublicRead(**view._asdict())


@router.post("/{token}", response_model=TokenRespondResult, response_model_exclude_none=True)
@limiter.limit(PUBLIC_BOOKING_LIMIT)
def respond(
    token: str,
    data: TokenRespondRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Confirm or cancel.

    Answering again after the appointment left pending is not an error:
    the response carries already_responded and the settled status.
    """
    try:
        result = confirmation_service.respond_by_token(db, token, data.response)
    except BookingError as e:
        raise http_error(e)

    if result.already_responded:
        return TokenRespondResult(already_responded=True, status=result.status)
    return TokenRespondResult(success=True, new_status=result.new_status)
