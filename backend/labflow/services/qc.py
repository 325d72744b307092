import logging
from typing import Dict, Optional, Protocol

import requests

from labflow import config
from labflow.errors import OperationFailed

logger = logging.getLogger(__name__)


class QCChecklist(Protocol):
    def all_items_complete(self, order_id: int) -> bool:
        ...


class HttpQCChecklist:
    """Asks the QC checklist service whether every item of an order is ticked."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or config.QC_SERVICE_URL).rstrip("/")
        self.timeout = config.QC_TIMEOUT_SECONDS if timeout is None else timeout

    def all_items_complete(self, order_id: int) -> bool:
        url = f"{self.base_url}/orders/{order_id}/checklist"
        try:
            resp = requests.get(url, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("QC checklist lookup failed order_id=%s url=%s: %s", order_id, url, e)
            raise OperationFailed("QCServiceUnavailable", str(e)) from e
        complete = bool(payload.get("all_complete", False))
        logger.debug("QC checklist order_id=%s all_complete=%s", order_id, complete)
        return complete


class StaticQCChecklist:
    """In-process checklist answers, for local runs and tests."""

    def __init__(self, default: bool = False):
        self.default = default
        self._answers: Dict[int, bool] = {}

    def set(self, order_id: int, complete: bool) -> None:
        self._answers[order_id] = complete

    def all_items_complete(self, order_id: int) -> bool:
        return self._answers.get(order_id, self.default)
