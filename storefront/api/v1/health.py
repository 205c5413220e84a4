import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text

from storefront.core.deps import get_services
from storefront.core.services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", summary="Health Check")
async def health_check(services: Services = Depends(get_services)):
    database = "ok"
    try:
        async with services.session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check database probe failed: %s", e)
        database = "unavailable"
    return {"status": "ok" if database == "ok" else "degraded", "database": database,
            "provider": services.gateway.name}
