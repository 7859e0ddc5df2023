import logging
from typing import Dict, List, Optional

import requests

from .schemas import Ticket

log = logging.getLogger("supportdesk.client")

class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def rate_limited(self) -> bool:
        return self.status == 429

# -------- HTTP client --------
class HttpClient:
    """
    Thin wrapper around requests.Session with:
      - base URL joining
      - optional proxy
      - CSRF token echoed from the csrfToken cookie on state-changing calls
    """
    CSRF_COOKIE = "csrfToken"

    def __init__(self, base_url: str, proxy_url: str = "", timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.proxy_url = proxy_url or ""
        self.timeout = float(timeout)
        self._build_session()

    def _build_session(self):
        s = requests.Session()
        s.headers.update({
            "Accept": "application/json",
            "Cache-Control": "no-store",
        })
        if self.proxy_url:
            s.proxies = {
                "http":  self.proxy_url,
                "https": self.proxy_url,
            }
        self._s = s

    def update(self, *, base_url: Optional[str]=None, proxy_url: Optional[str]=None):
        if base_url is not None:
            self.base_url = base_url.rstrip("/")
        if proxy_url is not None:
            self.proxy_url = proxy_url
        self._build_session()

    def url(self, path: str) -> str:
        return self.base_url + "/" + path.lstrip("/")

    def _csrf_headers(self) -> Dict[str, str]:
        token = self._s.cookies.get(self.CSRF_COOKIE)
        if not token:
            try:
                self._s.get(self.url("/auth/csrf"), timeout=min(self.timeout, 2.0))
            except requests.RequestException as e:
                log.warning("csrf token fetch failed: %s", e)
            token = self._s.cookies.get(self.CSRF_COOKIE)
        return {"X-CSRF-Token": token} if token else {}

    def get(self, path, **kw):
        kw.setdefault("timeout", self.timeout)
        return self._s.get(self.url(path), **kw)

    def post(self, path, json=None, **kw):
        kw.setdefault("timeout", self.timeout)
        headers = {"Content-Type": "application/json"}
        headers.update(self._csrf_headers())
        headers.update(kw.pop("headers", {}) or {})
        return self._s.post(self.url(path), json=json, headers=headers, **kw)

# -------- Backend contracts --------
def _error_message(r) -> str:
    try:
        body = r.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = (r.text or "").strip()
    return f"HTTP {r.status_code}: {text or r.reason}"

class BackendApi:
    """
    Blocking calls to the dashboard backend. Every failure surfaces as ApiError;
    callers run these through asyncio.to_thread.
    """
    def __init__(self, http: HttpClient, chat_timeout: float = 60.0):
        self.http = http
        self.chat_timeout = float(chat_timeout)

    def _call(self, method: str, path: str, payload=None, timeout: Optional[float] = None) -> dict:
        kw = {}
        if timeout is not None:
            kw["timeout"] = timeout
        try:
            if method == "GET":
                r = self.http.get(path, **kw)
            else:
                r = self.http.post(path, json=payload if payload is not None else {}, **kw)
        except requests.RequestException as e:
            raise ApiError(str(e) or e.__class__.__name__) from e
        if r.status_code == 429:
            raise ApiError("Rate limit exceeded", status=429)
        if not 200 <= r.status_code < 300:
            raise ApiError(_error_message(r), status=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise ApiError("Invalid JSON in response", status=r.status_code) from e
        if not isinstance(data, dict):
            raise ApiError("Unexpected response shape", status=r.status_code)
        return data

    @staticmethod
    def _require_success(data: dict, fallback: str):
        if data.get("status") != "success":
            raise ApiError(str(data.get("message") or fallback))

    @staticmethod
    def _ticket(data: dict) -> Ticket:
        raw = data.get("ticket")
        if not isinstance(raw, dict):
            raise ApiError("Response carries no ticket")
        try:
            return Ticket.model_validate(raw)
        except ValueError as e:
            raise ApiError(f"Malformed ticket: {e}") from e

    # ----- AI chat -----
    def chat(self, question: str, file_id: Optional[int] = None) -> str:
        payload: Dict[str, object] = {"question": question}
        if file_id is not None:
            payload["fileId"] = file_id
        data = self._call("POST", "/ai/chat", payload, timeout=self.chat_timeout)
        answer = data.get("answer")
        if not isinstance(answer, str):
            raise ApiError("Response carries no answer")
        return answer

    # ----- tickets -----
    def list_tickets(self) -> List[Ticket]:
        data = self._call("GET", "/messages")
        self._require_success(data, "Failed to load messages")
        try:
            return [Ticket.model_validate(t) for t in data.get("tickets") or []]
        except ValueError as e:
            raise ApiError(f"Malformed ticket list: {e}") from e

    def get_ticket(self, ticket_id: int) -> Ticket:
        return self._ticket(self._call("GET", f"/messages/{ticket_id}"))

    def create_ticket(self, message: str, subject: Optional[str] = None) -> Ticket:
        payload: Dict[str, object] = {"message": message}
        if subject:
            payload["subject"] = subject
        data = self._call("POST", "/messages", payload)
        self._require_success(data, "Failed to send message")
        return self._ticket(data)

    def reply(self, ticket_id: int, message: str) -> Ticket:
        data = self._call("POST", f"/messages/{ticket_id}/reply", {"message": message})
        self._require_success(data, "Failed to send reply")
        return self._ticket(data)

    def mark_read(self, ticket_id: int) -> None:
        data = self._call("POST", f"/messages/{ticket_id}/mark-read", {})
        self._require_success(data, "Failed to mark ticket as read")
