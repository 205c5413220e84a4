import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import AppException
from storefront.core.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    async with services.session_maker() as session:
        yield session


async def require_admin(
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
    services: Services = Depends(get_services),
) -> str:
    """Admin routes need the configured X-Admin-Key. Returns the actor name used in audit rows."""
    expected = services.config.ADMIN_API_KEY
    if not expected:
        AppException.raise_401("Admin API is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        AppException.raise_401("Invalid admin key")
    return "admin"
