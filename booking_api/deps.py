from typing import Optional

from fastapi import Header, Request

from booking_schemas import Caller
from errors import ForbiddenError
from services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_caller(x_user_id: Optional[str] = Header(None), x_staff: bool = Header(False)) -> Caller:
    """The upstream session service resolves the user and forwards it in headers."""
    if not x_user_id:
        raise ForbiddenError("Authentication required", code="unauthenticated")
    return Caller(user_id=x_user_id, is_staff=x_staff)
