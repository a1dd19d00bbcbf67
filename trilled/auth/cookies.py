# trilled/auth/cookies.py
"""
Raw Set-Cookie handling for the session cookie.

Cookies are always HttpOnly, Secure and SameSite=Lax with Path=/.
"""
from datetime import datetime
from email.utils import format_datetime
from typing import Optional

from fastapi import Request, Response


class CookieHandlers:
    def __init__(self, request: Request, response: Optional[Response] = None):
        self.request = request
        self.response = response

    def get(self, name: str) -> Optional[str]:
        return self.request.cookies.get(name)

    def set(self, name: str, value: str, expires: Optional[datetime] = None) -> None:
        cookie = f"{name}={value}; Path=/; HttpOnly; Secure; SameSite=Lax"
        if expires is not None:
            cookie += f"; Expires={format_datetime(expires, usegmt=True)}"
        self._append(cookie)

    def remove(self, name: str) -> None:
        self._append(f"{name}=; Path=/; HttpOnly; Secure; SameSite=Lax; Max-Age=0")

    def _append(self, cookie: str) -> None:
        if self.response is None:
            raise ValueError("Cookies can only be written to a response")
        self.response.headers.append("Set-Cookie", cookie)
