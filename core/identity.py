# treeledger/core/identity.py
"""
Acting identity supplied by the authentication collaborator.
"""
import hashlib
import hmac
from dataclasses import dataclass

from config import Config

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Who is performing a request."""
    userId: int
    role: str = ROLE_USER

    @property
    def isAdmin(self) -> bool:
        return self.role == ROLE_ADMIN or Config.is_admin(self.userId)


def require_admin(actor: Actor) -> None:
    """Raise PermissionDenied unless actor is an administrator."""
    from mlm_engine.errors import PermissionDenied

    if actor is None or not actor.isAdmin:
        raise PermissionDenied("Administrator role required")


def sign_identity(user_id: int, role: str, secret: str) -> str:
    """Signature the auth gateway attaches to forwarded identity headers."""
    payload = f"{user_id}:{role}".encode('utf-8')
    return hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()


def verify_identity(user_id: int, role: str, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_identity(user_id, role, secret)
    return hmac.compare_digest(expected, signature)
