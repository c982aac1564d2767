"""
Python client for the tiffin API.

Keeps the caller's session (token + user) in a small JSON file so a later
process picks it up again. The session is written after register/login,
refreshed by me(), and wiped on logout or as soon as the API answers 401.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SESSION_PATH = Path.home() / ".tiffin" / "session.json"


class ClientError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")


class SessionExpired(ClientError):
    pass


class Session:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    def load(self) -> "Session":
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text())
            except (OSError, ValueError):
                logger.warning("Ignoring unreadable session file %s", self.path)
                data = {}
            self.token = data.get("token")
            self.user = data.get("user")
        return self

    def save(self, token: Optional[str] = None, user: Optional[Dict[str, Any]] = None) -> None:
        if token is not None:
            self.token = token
        if user is not None:
            self.user = user
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"token": self.token, "user": self.user}))

    def clear(self) -> None:
        self.token = None
        self.user = None
        if self.path.exists():
            self.path.unlink()


class TiffinClient:
    def __init__(self, base_url: str = "http://localhost:8000", http: Optional[httpx.Client] = None,
                 session_path: Union[str, Path] = DEFAULT_SESSION_PATH, timeout: float = 10.0):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.session = Session(session_path).load()

    # --------------------- plumbing ---------------------

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        if response.status_code == 401:
            had_session = self.session.token is not None
            self.session.clear()
            detail = _detail(response)
            if had_session:
                raise SessionExpired(401, detail)
            raise ClientError(401, detail)
        if response.is_error:
            raise ClientError(response.status_code, _detail(response))
        return response.json()

    # --------------------- auth ---------------------

    def register(self, name: str, email: str, phone: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/api/auth/register/user",
                             json={"name": name, "email": email, "phone": phone, "password": password})
        self.session.save(token=data["token"], user=data["user"])
        return data

    def register_vendor(self, **vendor: Any) -> Dict[str, Any]:
        data = self._request("POST", "/api/auth/register/vendor", json=vendor)
        self.session.save(token=data["token"], user=data["vendor"])
        return data

    def login(self, email: str, password: str, user_type: str = "customer") -> Dict[str, Any]:
        data = self._request("POST", "/api/auth/login",
                             json={"email": email, "password": password, "user_type": user_type})
        self.session.save(token=data["token"], user=data["user"])
        return data

    def logout(self) -> None:
        try:
            if self.session.token:
                self._request("POST", "/api/auth/logout")
        finally:
            self.session.clear()

    def me(self) -> Dict[str, Any]:
        data = self._request("GET", "/api/auth/me")
        self.session.save(user=data["user"])
        return data["user"]

    def change_password(self, current_password: str, new_password: str) -> Dict[str, Any]:
        return self._request("POST", "/api/auth/change-password",
                             json={"current_password": current_password, "new_password": new_password})

    # --------------------- orders ---------------------

    def place_order(self, **order: Any) -> Dict[str, Any]:
        return self._request("POST", "/api/orders", json=order)

    def my_orders(self) -> list:
        return self._request("GET", "/api/orders/mine")

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/orders/{order_id}/cancel", json={"reason": reason})

    # --------------------- session state ---------------------

    def is_authenticated(self) -> bool:
        return bool(self.session.token and self.session.user)

    def has_role(self, role: str) -> bool:
        return bool(self.session.user) and self.session.user.get("role") == role

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return bool(self.session.user) and self.session.user.get("role") in set(roles)


def _detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text
    return body.get("detail") if isinstance(body, dict) else body
