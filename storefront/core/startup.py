"""
Startup utilities for the application.
"""
import logging

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.database import create_all
from storefront.core.templates import DEFAULT_TEMPLATES
from storefront.models.email_template import EmailTemplate

logger = logging.getLogger(__name__)


async def ensure_tables(engine: AsyncEngine, config: Settings) -> None:
    """Create missing tables outside production; production schemas come from 'alembic upgrade head'."""
    if config.is_production:
        return
    await create_all(engine)


async def ensure_default_templates(session_maker: async_sessionmaker[AsyncSession]) -> int:
    """Seed email_templates with the built-in defaults so admins can edit them. Existing keys are left alone."""
    try:
        async with session_maker() as session:
            result = await session.execute(select(EmailTemplate.template_key))
            existing = set(result.scalars().all())
            missing = [key for key in DEFAULT_TEMPLATES if key not in existing]
            for key in missing:
                subject, body = DEFAULT_TEMPLATES[key]
                session.add(EmailTemplate(template_key=key, subject=subject, body=body, is_active=True))
            await session.commit()
    except (OperationalError, ProgrammingError) as e:
        logger.warning(
            f"Could not seed email templates: {e}. "
            f"Please ensure database is accessible and migrations are run."
        )
        return 0
    if missing:
        logger.info(f"Seeded {len(missing)} default email template(s)")
    return len(missing)
