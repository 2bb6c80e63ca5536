"""
Bearer-token authentication

Tokens are JWTs issued by the Appwrite identity provider; verifying one means
asking the provider for the account the token belongs to.
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

import config
from errors import AuthError

logger = logging.getLogger(__name__)


class UserIdentity(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., alias="$id")
    name: Optional[str] = None
    email: Optional[str] = None


class IdentityProvider:
    def authenticate(self, token: str) -> UserIdentity:
        raise NotImplementedError


class AppwriteIdentityProvider(IdentityProvider):
    def __init__(self, endpoint: str, project_id: str, timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.endpoint = endpoint.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "AppwriteIdentityProvider":
        return cls(config.APPWRITE_ENDPOINT, config.APPWRITE_PROJECT_ID)

    def authenticate(self, token: str) -> UserIdentity:
        try:
            response = httpx.get(
                f"{self.endpoint}/account",
                headers={"X-Appwrite-Project": self.project_id, "X-Appwrite-JWT": token},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Token verification failed: %s", e)
            raise AuthError("Invalid or expired token")
        return UserIdentity.model_validate(response.json())


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
