"""
Security Utilities
==================

Bearer token verification and SMART scope handling.

Tokens are issued by the authorization server (not part of this package) and
signed with the shared ``SECRET_KEY``. The export engine only needs to know
whether a token is valid and which resource types it may read.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from jose import jwt, JWTError
from pydantic import BaseModel

from bulkdata.core.config import settings


# (patient|user|system|*)/(*|ResourceType).(read|write|*)
RE_SCOPE_V1 = re.compile(r"^\s*(patient|user|system|\*)/(\*|[A-Z][A-Za-z0-9]+)\.(read|write|\*)\s*$")

# (patient|user|system)/(*|ResourceType).[cruds]?query
RE_SCOPE_V2 = re.compile(r"^\s*(patient|user|system)/(\*|[A-Z][A-Za-z0-9]+)\.([cruds]+)(\?.*)?$")

_ACTION_LETTERS = {
    "c": "create",
    "r": "read",
    "u": "update",
    "d": "delete",
    "s": "search",
}


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be verified."""


class Scope(BaseModel):
    """A single parsed SMART scope."""

    level: str
    resource: str
    actions: Dict[str, bool]
    version: str

    @classmethod
    def from_string(cls, scope: str) -> "Scope":
        """
        Parse a v1 (``system/Patient.read``) or v2 (``system/Patient.rs``)
        scope string.

        Raises:
            ValueError: If the string is not a recognized scope
        """
        text = str(scope or "")

        match = RE_SCOPE_V1.match(text)
        if match:
            level, resource, action = match.groups()
            return cls(
                level=level,
                resource=resource,
                version="1",
                actions={
                    "create": action in ("*", "write"),
                    "read": action in ("*", "read"),
                    "update": action in ("*", "write"),
                    "delete": action in ("*", "write"),
                    "search": action in ("*", "read"),
                },
            )

        match = RE_SCOPE_V2.match(text)
        if match:
            level, resource, letters, _query = match.groups()
            return cls(
                level=level,
                resource=resource,
                version="2",
                actions={name: letter in letters for letter, name in _ACTION_LETTERS.items()},
            )

        raise ValueError(f'Invalid scope "{scope}"')

    def has_access_to(self, resource_type: str, access: str = "read", level: str = "system") -> bool:
        if self.level != "*" and self.level != level:
            return False

        if self.resource != "*" and self.resource != resource_type:
            return False

        create = self.actions.get("create", False)
        read = self.actions.get("read", False)
        update = self.actions.get("update", False)
        delete = self.actions.get("delete", False)
        search = self.actions.get("search", False)

        if access == "*":
            return create and read and update and delete and search
        if access == "read":
            return read and search
        if access == "write":
            return create and update and delete
        if not re.fullmatch(r"[cruds]+", access):
            return False
        return all(self.actions.get(_ACTION_LETTERS[letter], False) for letter in access)


def parse_scopes(scopes: str) -> List[Scope]:
    """Parse a space separated scope string, ignoring unknown entries."""
    out: List[Scope] = []
    for item in str(scopes or "").split():
        try:
            out.append(Scope.from_string(item))
        except ValueError:
            continue
    return out


def has_access_to_resource_type(scopes: List[Scope], resource_type: str, access: str = "read") -> bool:
    """True if any of the scopes grants system level access to the type."""
    return any(scope.has_access_to(resource_type, access, "system") for scope in scopes)


class TokenData(BaseModel):
    """Decoded bearer token data for request context."""

    client_id: Optional[str] = None
    scope: str = ""
    error: Optional[str] = None

    @property
    def scopes(self) -> List[Scope]:
        return parse_scopes(self.scope)


def get_bearer_token(authorization: Optional[str]) -> str:
    return re.sub(r"^bearer\s+", "", str(authorization or "").strip(), flags=re.IGNORECASE)


def decode_access_token(authorization: str) -> TokenData:
    """
    Verify a bearer token taken from an Authorization header value.

    Raises:
        InvalidTokenError: If the signature or claims are invalid
    """
    token = get_bearer_token(authorization)
    try:
        payload: Dict[str, Any] = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    return TokenData(
        client_id=payload.get("client_id") or payload.get("sub"),
        scope=str(payload.get("scope") or ""),
        error=payload.get("err") or payload.get("sim_error") or payload.get("auth_error"),
    )


def get_granted_scopes(authorization: Optional[str]) -> List[Scope]:
    """Scopes granted by the bearer token, or an empty list if it is invalid."""
    if not authorization:
        return []
    try:
        return decode_access_token(authorization).scopes
    except InvalidTokenError:
        return []


def create_access_token(
    scope: str = "system/*.read",
    client_id: str = "bulk-client",
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """
    Create a signed access token. The authorization server uses the same
    format; this helper exists for local development and tests.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.DEFAULT_TOKEN_LIFETIME))

    payload = {
        "client_id": client_id,
        "scope": scope,
        "iat": now,
        "exp": expire,
        **claims,
    }

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
