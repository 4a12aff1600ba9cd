import hashlib
import hmac
import json
import logging
import random
import secrets
import string
from typing import Annotated, Any, Iterable, MutableMapping, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .settings import config_settings

logger = logging.getLogger(__name__)

# Admin endpoints (results) use a static bearer token list from settings.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(token: Annotated[str, Depends(oauth2_scheme)]):
    """
    Dependency that requires a Bearer token listed in ``TOKENS``.

    If no token is provided, OAuth2PasswordBearer automatically raises
    a 401 Unauthorized exception.
    """
    if not token or token not in config_settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token


SESSION_TOKEN_KEY = "abengine-token"
TOKEN_ALPHABET = string.digits + string.ascii_letters
TOKEN_LENGTH = 32
REQUIRED_FIELDS = ("test_id", "variation_id")


class EventAuthorizer:
    """
    Issues per-session tokens and signs/verifies event submissions.

    The page render receives the session token plus an HMAC-SHA256 code for
    every payload it may later submit (the active pageviews and each event
    hook). A submission is only honoured if it carries the same session
    token and a code matching the payload it claims, so third parties cannot
    forge pageviews or wins for arbitrary tests.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        session_key: str = SESSION_TOKEN_KEY,
        token_length: int = TOKEN_LENGTH,
    ):
        self.rng = rng or secrets.SystemRandom()
        self.session_key = session_key
        self.token_length = token_length

    def issue_token(self, session: MutableMapping[str, Any]) -> str:
        token = session.get(self.session_key)
        if token:
            return token

        token = "".join(self.rng.choice(TOKEN_ALPHABET) for _ in range(self.token_length))
        session[self.session_key] = token
        return token

    def session_token(self, session: MutableMapping[str, Any]) -> Optional[str]:
        return session.get(self.session_key)

    @staticmethod
    def canonicalize(payload: Any) -> bytes:
        """Stable byte form of a JSON-like payload: sorted keys, no whitespace."""
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def sign(self, token: str, payload: Any) -> str:
        return hmac.new(
            token.encode("utf-8"), self.canonicalize(payload), hashlib.sha256
        ).hexdigest()

    def verify(
        self,
        submitted_token: Optional[str],
        submitted_code: Optional[str],
        payload: Any,
        session_token: Optional[str],
        required_fields: Iterable[str] = REQUIRED_FIELDS,
    ) -> bool:
        """
        True only if the submitted token is the session's token and the code
        is the signature of ``payload`` under it. Every failure is a plain
        False; the reason is logged but never returned.
        """
        if not submitted_token or not submitted_code or not session_token:
            logger.info("Rejected submission: missing token or code")
            return False

        if not hmac.compare_digest(submitted_token.encode("utf-8"), session_token.encode("utf-8")):
            logger.info("Rejected submission: token does not match session")
            return False

        if not self._has_required_fields(payload, tuple(required_fields)):
            logger.info("Rejected submission: payload is missing required fields")
            return False

        try:
            expected = self.sign(submitted_token, payload)
        except (TypeError, ValueError):
            logger.info("Rejected submission: payload is not serializable")
            return False

        if not hmac.compare_digest(expected.encode("utf-8"), submitted_code.encode("utf-8")):
            logger.info("Rejected submission: signature mismatch")
            return False

        return True

    @staticmethod
    def _has_required_fields(payload: Any, required_fields: tuple) -> bool:
        items = payload if isinstance(payload, list) else [payload]
        if not items:
            return False
        for item in items:
            if not isinstance(item, dict):
                return False
            for name in required_fields:
                value = item.get(name)
                if not isinstance(value, str) or not value:
                    return False
        return True
