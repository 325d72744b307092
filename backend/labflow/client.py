"""HTTP client for the order core, used by portals and other services."""
from copy import deepcopy
from decimal import Decimal
from typing import Any, Callable, Dict, MutableMapping, Optional
import logging

import requests

from labflow.errors import from_payload
from labflow.models.actor import Actor
from labflow.services.retry import retry_policy

logger = logging.getLogger(__name__)


class LabflowClient:
    def __init__(self, base_url: str, actor: Actor, timeout: float = 10, session: Optional[requests.Session] = None, **retry_kwargs):
        self.base_url = base_url.rstrip("/")
        self.actor = actor
        self.timeout = timeout
        self.http = session or requests.Session()
        self._send = retry_policy(**retry_kwargs)(self._send_once)
        logger.debug("LabflowClient initialized base_url=%s actor=%s", self.base_url, actor.actor_id)

    def _headers(self) -> Dict[str, str]:
        return {"X-Actor-Id": self.actor.actor_id, "X-Actor-Role": self.actor.role.value}

    def _send_once(self, method: str, path: str, payload: Optional[dict] = None):
        resp = self.http.request(method, self.base_url + path, json=payload, headers=self._headers(), timeout=self.timeout)
        if resp.status_code < 400:
            return resp.json() if resp.content else None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and "error" in body:
            # typed refusal from the core; retryable only when it says so
            raise from_payload(body)
        resp.raise_for_status()

    def request(self, method: str, path: str, payload: Optional[dict] = None):
        return self._send(method, path, payload)

    # orders

    def create_order(self, **fields) -> dict:
        return self.request("POST", "/orders", _jsonable(fields))

    def get_order(self, order_id: int) -> dict:
        return self.request("GET", f"/orders/{order_id}")

    def update_status(self, order_id: int, status: str, notes: Optional[str] = None) -> dict:
        return self.request("POST", f"/orders/{order_id}/status", {"status": status, "notes": notes})

    def submit_to_marketplace(self, order_id: int) -> dict:
        return self.request("POST", f"/orders/{order_id}/marketplace")

    def confirm_delivery(self, order_id: int) -> dict:
        return self.request("POST", f"/orders/{order_id}/delivery/confirm")

    def report_delivery_issue(self, order_id: int, description: str) -> dict:
        return self.request("POST", f"/orders/{order_id}/delivery/issue", {"description": description})

    # marketplace

    def marketplace_orders(self) -> list:
        return self.request("GET", "/marketplace/orders")

    def apply_to_order(self, order_id: int, proposed_fee: Optional[Decimal] = None) -> dict:
        return self.request("POST", f"/marketplace/orders/{order_id}/applications", _jsonable({"proposed_fee": proposed_fee}))

    def accept_application(self, application_id: int) -> dict:
        return self.request("POST", f"/marketplace/applications/{application_id}/accept")

    def reject_application(self, application_id: int) -> dict:
        return self.request("POST", f"/marketplace/applications/{application_id}/reject")

    # invoicing

    def invoice_for_order(self, order_id: int) -> dict:
        return self.request("GET", f"/invoices/orders/{order_id}")

    def raise_dispute(self, invoice_id: int, reason: str) -> dict:
        return self.request("POST", f"/invoices/{invoice_id}/dispute", {"reason": reason})

    def resolve_dispute(self, invoice_id: int, resolution_action: str, notes: Optional[str] = None, adjustment_amount: Optional[Decimal] = None) -> dict:
        payload = {"resolution_action": resolution_action, "notes": notes, "adjustment_amount": adjustment_amount}
        return self.request("POST", f"/invoices/{invoice_id}/dispute/resolve", _jsonable(payload))

    def upsert_pricing_rule(self, **fields) -> dict:
        return self.request("PUT", "/pricing-rules", _jsonable(fields))

    def delete_pricing_rule(self, rule_id: int) -> None:
        return self.request("DELETE", f"/pricing-rules/{rule_id}")


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in fields.items():
        if isinstance(v, Decimal):
            v = str(v)
        elif hasattr(v, "isoformat"):
            v = v.isoformat()
        elif hasattr(v, "value"):
            v = v.value
        out[k] = v
    return out


class OptimisticUpdate:
    """Apply a change to local state before the server confirms it.

    On failure the local state is put back to the snapshot taken before the
    change and the error is re-raised for the caller to show.
    """

    def __init__(self, state: MutableMapping, change: Callable[[MutableMapping], None]):
        self.state = state
        self.change = change
        self.snapshot: Optional[dict] = None

    def submit(self, command: Callable[[], Any]):
        self.snapshot = deepcopy(dict(self.state))
        self.change(self.state)
        try:
            result = command()
        except Exception:
            self.rollback()
            raise
        if isinstance(result, dict):
            # server state wins over the speculative one
            self.state.update(result)
        return result

    def rollback(self) -> None:
        if self.snapshot is None:
            return
        self.state.clear()
        self.state.update(self.snapshot)
        logger.debug("Optimistic change rolled back")
