"""
JWT token service.

Tokens are issued by the identity service; this side only needs to verify
them and read the tenant context. `create_token` exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from msgrelay.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, tenant_id: str, role: str = "member", expires_minutes: int = 60) -> str:
        """
        Create a JWT token with tenant context.

        Args:
            subject: Caller ID (user or API client)
            tenant_id: Tenant the caller acts for
            role: "admin" or "member"
            expires_minutes: Token lifetime

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)

        payload = {
            "sub": subject,
            "tenant_id": tenant_id,
            "role": role,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None
