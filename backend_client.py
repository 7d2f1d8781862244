"""
PostgREST client for the hosted backend (products, cash sessions, promotions,
fiscal documents).

Configuration comes from the environment:
  PDV_BACKEND_URL     e.g. https://xyz.supabase.co
  PDV_BACKEND_KEY     anon/service API key (sent as `apikey`)
  PDV_ACCESS_TOKEN    user JWT; falls back to the API key
  PDV_HTTP_TIMEOUT    seconds (default 20)
"""
import logging
import os
from typing import Any, Dict, List, Optional

import requests

log = logging.getLogger(__name__)

DEFAULT_PRODUCT_LIMIT = 1000
PRODUCT_FIELDS = "id,name,price,category,sku,ncm,unit,stock_quantity,barcode"


class BackendError(RuntimeError):
    """Raised when the backend answers with an error status or an unusable body."""
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code

    @property
    def is_duplicate(self) -> bool:
        return self.code == "23505" or self.status == 409 or "duplicate" in str(self).lower()


def _error_from_response(resp: requests.Response) -> BackendError:
    try:
        j = resp.json()
    except ValueError:
        j = None
    if isinstance(j, dict):
        message = j.get("message") or j.get("error_description") or j.get("error") or resp.text
        code = j.get("code")
    else:
        message, code = resp.text, None
    return BackendError(message or f"HTTP {resp.status_code}", status=resp.status_code,
                        code=str(code) if code is not None else None)


class BackendClient:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 access_token: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or os.getenv("PDV_BACKEND_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("PDV_BACKEND_KEY")
        self.access_token = access_token or os.getenv("PDV_ACCESS_TOKEN") or self.api_key
        self.timeout = timeout or float(os.getenv("PDV_HTTP_TIMEOUT", "20"))
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        if not self.configured:
            raise BackendError("Missing PDV_BACKEND_URL/PDV_BACKEND_KEY in environment")
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, table: str, params: Optional[Dict[str, Any]] = None,
                 json: Any = None, prefer: Optional[str] = None) -> Any:
        url = f"{self.base_url}/rest/v1/{table}"
        resp = self.session.request(method, url, headers=self._headers(prefer), params=params,
                                    json=json, timeout=self.timeout)
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"Invalid JSON from {table}", status=resp.status_code) from exc

    # ---------- reads ----------
    def fetch_products(self, company_id: str, limit: int = DEFAULT_PRODUCT_LIMIT) -> List[Dict[str, Any]]:
        data = self._request("GET", "products", params={
            "select": PRODUCT_FIELDS,
            "company_id": f"eq.{company_id}",
            "is_active": "eq.true",
            "order": "name.asc",
            "limit": str(limit),
        })
        return data or []

    def fetch_current_session(self, company_id: str, terminal_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        params = {
            "select": "*",
            "company_id": f"eq.{company_id}",
            "status": "eq.aberto",
            "order": "opened_at.desc",
            "limit": "1",
        }
        if terminal_id:
            params["terminal_id"] = f"eq.{terminal_id}"
        data = self._request("GET", "cash_sessions", params=params)
        return data[0] if data else None

    def fetch_promotions(self, company_id: str, only_active: bool = True, limit: int = 200) -> List[Dict[str, Any]]:
        """Promotion rows enriched with `product_ids` from promotion_items."""
        params = {
            "select": "*",
            "company_id": f"eq.{company_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        if only_active:
            params["is_active"] = "eq.true"
        promos = self._request("GET", "promotions", params=params) or []
        links = self._request("GET", "promotion_items", params={
            "select": "promotion_id,product_id",
            "company_id": f"eq.{company_id}",
        }) or []
        item_map: Dict[str, List[str]] = {}
        for link in links:
            item_map.setdefault(link.get("promotion_id"), []).append(link.get("product_id"))
        for promo in promos:
            promo["product_ids"] = item_map.get(promo.get("id"), [])
        return promos

    # ---------- writes ----------
    def create_sale(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """
        payload = {
          'company_id', 'user_id', 'session_id'?, 'items': [SaleItem], 'total',
          'payment_method', 'payment_results': [...], 'customer_cpf'?, 'customer_name'?,
          'offline_id'?  (sync queue id of a replayed sale)
        }
        Returns {'fiscal_doc_id', 'nfce_number'}.
        """
        row = {
            "company_id": payload.get("company_id"),
            "doc_type": "nfce",
            "total_value": payload.get("total"),
            "payment_method": payload.get("payment_method"),
            "items_json": payload.get("items") or [],
            "status": "pendente",
            "issued_by": payload.get("user_id"),
            "customer_cpf_cnpj": payload.get("customer_cpf"),
            "customer_name": payload.get("customer_name"),
        }
        # unique on the backend; a replayed queue item fails with 23505
        if payload.get("offline_id"):
            row["offline_id"] = payload["offline_id"]
        doc_rows = self._request("POST", "fiscal_documents", prefer="return=representation", json=row)
        if not doc_rows:
            raise BackendError("Fiscal document insert returned no row")
        doc = doc_rows[0] if isinstance(doc_rows, list) else doc_rows
        doc_id = str(doc.get("id"))
        number = doc.get("number")

        session_id = payload.get("session_id")
        results = payload.get("payment_results") or []
        if session_id and results:
            label = number or doc_id[:8]
            movements = [{
                "company_id": payload.get("company_id"),
                "session_id": session_id,
                "type": "venda",
                "amount": pr.get("amount"),
                "payment_method": pr.get("method"),
                "performed_by": payload.get("user_id"),
                "sale_id": doc_id,
                "description": f"Venda #{label} - {pr.get('method')}",
            } for pr in results]
            try:
                self._request("POST", "cash_movements", json=movements)
            except (BackendError, requests.RequestException) as exc:
                log.warning("Cash movements for sale %s not recorded: %s", doc_id, exc)

        return {"fiscal_doc_id": doc_id, "nfce_number": str(number).zfill(6) if number is not None else ""}
