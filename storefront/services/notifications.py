"""
User notifications (in-app rows) and optional transactional email.

Email goes to an external mail API only when MAIL_API_URL is configured;
like every side effect here it is best-effort.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import Settings
from storefront.models import Notification

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(20.0)


class Notifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> int:
        async with self._session_factory() as session:
            row = Notification(
                user_id=user_id, type=type, title=title, message=message, link=link
            )
            session.add(row)
            await session.commit()
        logger.debug("Notification %s queued for user=%s", type, user_id)
        return row.id

    async def send_email(self, user_id: str, template: str, context: Dict[str, Any]) -> bool:
        """POST a templated email request to the mail API.  False if disabled or rejected."""
        if not self._settings.mail_enabled:
            return False

        headers = {}
        if self._settings.mail_api_key:
            headers["Authorization"] = f"Bearer {self._settings.mail_api_key}"
        payload = {"user_id": user_id, "template": template, "context": context}

        async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
            resp = await client.post(self._settings.mail_api_url, json=payload, headers=headers)
            if not resp.is_success:
                logger.error(
                    "Mail API error template=%s user=%s status=%d body=%s",
                    template, user_id, resp.status_code, resp.text[:300],
                )
                return False
        return True
