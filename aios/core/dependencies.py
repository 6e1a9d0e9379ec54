import secrets

from fastapi import Header, HTTPException, Request, status

from aios.core.config import settings
from aios.gateway.dispatcher import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    """The dispatcher built in the app lifespan."""
    return request.app.state.dispatcher


async def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Guard administrative endpoints when AIOS_ADMIN_TOKEN is configured."""
    if not settings.admin_token:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing admin token")
