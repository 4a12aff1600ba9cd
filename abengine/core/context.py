import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, MutableMapping, Optional


@dataclass
class CookieWrite:
    """A cookie change to be applied to the outgoing response. ``value=None`` deletes it."""

    name: str
    value: Optional[str]
    max_age: int


@dataclass
class VisitorContext:
    """
    Everything the engine knows about the visitor for one request.

    Built once per request by the HTTP layer and threaded through the
    services; the engine never touches framework globals. Cookie changes are
    collected in ``cookie_writes`` and applied to the response by the caller.
    """

    cookies: Dict[str, str] = field(default_factory=dict)
    session: MutableMapping[str, Any] = field(default_factory=dict)
    visitor_id: Optional[str] = None
    user_agent: Optional[str] = None
    cookie_writes: List[CookieWrite] = field(default_factory=list)

    def set_cookie(self, name: str, value: str, max_age: int) -> None:
        self.cookies[name] = value
        self.cookie_writes.append(CookieWrite(name=name, value=value, max_age=max_age))

    def delete_cookie(self, name: str) -> None:
        self.cookies.pop(name, None)
        self.cookie_writes.append(CookieWrite(name=name, value=None, max_age=0))

    def ensure_visitor_id(self, cookie_name: str, max_age: int) -> str:
        """Returns the durable visitor id, minting one (and its cookie) on first visit."""
        if not self.visitor_id:
            self.visitor_id = self.cookies.get(cookie_name) or str(uuid.uuid4())
            if self.cookies.get(cookie_name) != self.visitor_id:
                self.set_cookie(cookie_name, self.visitor_id, max_age)
        return self.visitor_id
