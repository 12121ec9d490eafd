"""
Transport credential carriers.

The 2FA layer hands opaque tokens (pending-challenge token, device trust
token) to the client and reads them back on later requests. It only talks
to the CredentialCarrier interface, so the core logic runs without a real
HTTP layer; the API wires in CookieCarrier.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_CLEARED = object()


class CredentialCarrier(ABC):
    """
    Abstract client-side credential storage.

    Implementations must honor the security flags; the defaults are the
    strict ones.
    """

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        """Read a credential presented by the client."""
        pass

    @abstractmethod
    def set(
        self,
        name: str,
        value: str,
        max_age: int,
        secure: bool = True,
        httponly: bool = True,
        samesite: str = "lax",
    ) -> None:
        """Issue a credential to the client for max_age seconds."""
        pass

    @abstractmethod
    def clear(self, name: str) -> None:
        """Remove a credential from the client."""
        pass


class CookieCarrier(CredentialCarrier):
    """
    Cookie-based carrier for a single request/response pair.

    Reads come from the request cookies, writes go to the response. A value
    written (or cleared) earlier in the same request shadows the request
    cookie, so a rotated token is what later reads observe.
    """

    def __init__(
        self,
        request: Request,
        response: Response,
        path: str = "/",
        domain: Optional[str] = None,
    ):
        self.request = request
        self.response = response
        self.path = path
        self.domain = domain
        self._written: Dict[str, object] = {}

    def get(self, name: str) -> Optional[str]:
        if name in self._written:
            value = self._written[name]
            return None if value is _CLEARED else value
        return self.request.cookies.get(name)

    def set(
        self,
        name: str,
        value: str,
        max_age: int,
        secure: bool = True,
        httponly: bool = True,
        samesite: str = "lax",
    ) -> None:
        self.response.set_cookie(
            key=name,
            value=value,
            max_age=max(0, int(max_age)),
            path=self.path,
            domain=self.domain,
            secure=secure,
            httponly=httponly,
            samesite=samesite,
        )
        self._written[name] = value

    def clear(self, name: str) -> None:
        self.response.delete_cookie(key=name, path=self.path, domain=self.domain)
        self._written[name] = _CLEARED
