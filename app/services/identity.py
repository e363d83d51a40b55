"""Mapping of remote tracker accounts to local users"""

import logging
import secrets
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models import Credential, Server, User

logger = logging.getLogger(__name__)


def display_name(remote_user: Dict[str, Any]) -> str:
    """Build "First Last" from a remote profile, falling back to the login."""
    name = " ".join(
        part for part in (remote_user.get("firstname"), remote_user.get("lastname")) if part
    ).strip()
    return name or remote_user.get("login") or f"user-{remote_user.get('id')}"


def unusable_password() -> str:
    # Never a valid hash: accounts created here cannot log in interactively.
    return "!" + secrets.token_urlsafe(48)


class IdentityResolver:
    """Resolve remote user ids to local users, creating users/credentials lazily.

    Matching is best effort: a remote user is linked to an existing local user
    with the same email or, failing that, the exact same name.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_credential(self, ext_id: int, server_id: int) -> Optional[Credential]:
        return (
            self.db.query(Credential)
            .filter(Credential.ext_id == int(ext_id), Credential.server_id == server_id)
            .first()
        )

    def resolve_user(self, client, remote_user_id: int, server: Server) -> User:
        """Return the local user for a remote user id on ``server``."""
        credential = self.find_credential(remote_user_id, server.id)
        if credential is not None:
            return credential.user

        remote_user = client.get_user(remote_user_id)
        name = display_name(remote_user)
        email = remote_user.get("mail") or None

        local_user = self._match_local_user(name, email)
        if local_user is None:
            local_user = User(name=name, email=email, password=unusable_password())
            self.db.add(local_user)
            logger.info(f"Created local user '{name}' for remote user {remote_user_id} on {server.name}")
        elif email and not local_user.email:
            local_user.email = email

        credential = Credential(
            user=local_user,
            server_id=server.id,
            ext_id=int(remote_user_id),
            username=remote_user.get("login") or name,
        )
        self.db.add(credential)
        self.db.flush()
        return local_user

    def _match_local_user(self, name: str, email: Optional[str]) -> Optional[User]:
        if email:
            by_email = self.db.query(User).filter(User.email == email).first()
            if by_email is not None:
                return by_email
        return self.db.query(User).filter(User.name == name).first()
