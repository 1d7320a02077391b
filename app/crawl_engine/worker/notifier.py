"""
Admin notification sink for actionable crawl failures.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AdminNotifier(ABC):
    """Receives SKIP_NOTIFY_ADMIN escalations"""

    @abstractmethod
    async def notify(self, admin_id: Optional[str], message: str, **context: Any) -> None: ...


class LoggingNotifier(AdminNotifier):
    """Logs notifications and keeps the most recent ones for inspection"""

    def __init__(self, keep_last: int = 100):
        self.keep_last = keep_last
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, admin_id: Optional[str], message: str, **context: Any) -> None:
        logger.warning(f"Admin notification for {admin_id or 'unassigned'}: {message}", extra=context)
        self.sent.append({"admin_id": admin_id, "message": message, **context})
        del self.sent[: -self.keep_last]
