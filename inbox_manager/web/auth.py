"""
auth.py
-------
JWT verification for the inbox API.

Tokens are issued by Supabase. With ``SUPABASE_JWKS_URL`` configured the
signing key is fetched (and cached) from the JWKS endpoint and ES256/RS256
signatures are accepted; otherwise tokens must be HS256-signed with
``SUPABASE_JWT_SECRET``. Expiry and audience are always enforced.
"""

import logging
from typing import Any, Dict, Optional

import jwt
from jwt import PyJWKClient

logger = logging.getLogger(__name__)

AUTH_COOKIE_NAME = "sb-auth-token"
ASYMMETRIC_ALGORITHMS = ["ES256", "RS256"]


class AuthenticationError(Exception):
    """The request carried no token or a token that failed verification."""


def extract_token(request: Any) -> Optional[str]:
    """Bearer token from the Authorization header, else the session cookie."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return request.cookies.get(AUTH_COOKIE_NAME) or None


class TokenVerifier:
    def __init__(
        self,
        jwks_url: str = "",
        secret: str = "",
        audience: str = "authenticated",
        jwk_client: Optional[PyJWKClient] = None,
    ) -> None:
        self.audience = audience or None
        self.secret = secret
        self._jwk_client = jwk_client or (PyJWKClient(jwks_url) if jwks_url else None)
        if self._jwk_client is None and not secret:
            logger.warning("No JWKS URL or JWT secret configured; every authenticated request will be rejected")

    @classmethod
    def from_config(cls, config: Any) -> "TokenVerifier":
        return cls(
            jwks_url=config.SUPABASE_JWKS_URL,
            secret=config.SUPABASE_JWT_SECRET,
            audience=config.SUPABASE_JWT_AUDIENCE,
        )

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the verified claims of ``token``.

        Raises:
            AuthenticationError: Signature, expiry, audience or subject check failed
        """
        options = {"require": ["exp", "sub"], "verify_exp": True}
        try:
            if self._jwk_client is not None:
                signing_key = self._jwk_client.get_signing_key_from_jwt(token)
                return jwt.decode(
                    token,
                    signing_key.key,
                    algorithms=ASYMMETRIC_ALGORITHMS,
                    audience=self.audience,
                    options=options,
                )
            if not self.secret:
                raise AuthenticationError("Token verification is not configured")
            return jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
                options=options,
            )
        except jwt.PyJWTError as e:
            logger.info(f"Rejected authentication token: {e}")
            raise AuthenticationError(f"Invalid authentication token: {e}") from e

    def user_id(self, token: str) -> str:
        sub = self.verify(token).get("sub")
        if not isinstance(sub, str) or not sub:
            raise AuthenticationError("User not authenticated (missing sub claim).")
        return sub
