"""Side effects that live outside the order transaction."""
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from order_engine.core.logging_config import get_logger
from order_engine.domain.models import Activity

logger = get_logger(__name__)


class ActivityRecorder:
    """Writes the audit trail in a session of its own.

    Called after the order transaction has committed; a failure here is logged
    and never reaches the caller.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, subject_type: str, subject_id: int, actor_id: Optional[str], description: str) -> None:
        db = self.session_factory()
        try:
            db.add(Activity(relatable_id=subject_id, type=subject_type, user_id=actor_id, description=description))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record activity for {subject_type} {subject_id}: {e}")
        finally:
            db.close()


class Notifier:
    """Announces placed orders to a webhook, if one is configured."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def order_placed(self, order_id: int) -> None:
        if not self.webhook_url:
            logger.info(f"Order {order_id} placed; no notification webhook configured")
            return
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json={"event": "order_placed", "order_id": order_id})
                response.raise_for_status()
            logger.info(f"Notified webhook of order {order_id}")
        except httpx.HTTPError as e:
            logger.warning(f"Order notification failed for order {order_id}: {e}")
