"""
Dependency injection for authenticated routes.

Resolves the bearer token to an active login session, then validates the
caller against the read model (not against what the token claims).
"""

from dataclasses import dataclass

from fastapi import Depends, Request

from ..container import Container
from ..core.errors import AuthenticationError, AuthorizationError
from ..db.store import LoginSession
from ..observability import actor_address_var
from ..schemas import Account


@dataclass(frozen=True)
class Caller:
    session: LoginSession
    account: Account

    @property
    def address(self) -> str:
        return self.account.address


def get_container(request: Request) -> Container:
    """Get the service container from app state."""
    return request.app.state.container


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    return token.strip()


async def require_session(
    request: Request,
    container: Container = Depends(get_container),
) -> Caller:
    """Require an active session of an authorized account."""
    session = container.sessions.resolve(bearer_token(request))
    account = container.store.get_account(session.address)
    if account is None or not account.is_authorized:
        container.sessions.revoke_for_address(session.address)
        raise AuthorizationError("Account is no longer authorized")
    actor_address_var.set(account.address)
    return Caller(session=session, account=account)


async def require_admin(caller: Caller = Depends(require_session)) -> Caller:
    """Require admin rights. Trust the read model, not the session."""
    if not caller.account.is_admin:
        raise AuthorizationError("Admin rights required")
    return caller
