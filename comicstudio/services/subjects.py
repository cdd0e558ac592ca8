"""
Subject writer: pushes finished job results into the entity they target.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from comicstudio.core.database import AsyncSessionLocal, transaction
from comicstudio.models.db import Panel, utcnow

logger = structlog.get_logger()


class SubjectWriter(ABC):
    @abstractmethod
    async def update_subject_image(
        self,
        subject_ref: str,
        image_url: Optional[str],
        thumbnail_url: Optional[str],
        prompt_used: Optional[str],
    ) -> bool:
        """Returns whether the subject existed and was updated"""


class PanelSubjectWriter(SubjectWriter):
    """Writes generated images onto panels."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def update_subject_image(
        self,
        subject_ref: str,
        image_url: Optional[str],
        thumbnail_url: Optional[str],
        prompt_used: Optional[str],
    ) -> bool:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                update(Panel)
                .where(Panel.panel_id == subject_ref)
                .values(
                    image_url=image_url,
                    thumbnail_url=thumbnail_url,
                    generation_prompt=prompt_used,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            logger.warning("Panel not found for job result", panel_id=subject_ref)
            return False
        return True


panel_writer = PanelSubjectWriter()
