"""
Account Administration

Accounts are wallet addresses registered on the ledger by an admin.
Admins register, revoke, and restore accounts and grant or withdraw
admin rights. Nothing is deleted; a revoked account keeps its history.

RULES:
- only an authorized admin may act
- an address is registered at most once
- revoke only an authorized account, restore only a revoked one
- the last admin can lose neither admin rights nor authorization
"""

from typing import TYPE_CHECKING, Optional

from ..db.store import ReadModelStore
from ..observability import get_logger
from ..schemas import Account, LedgerAction, RegisterUserPayload, TxReceipt
from .errors import AccountNotFound, AuthorizationError, InvalidTransition, ValidationError
from .signature import normalize_address
from .submission import SubmissionGateway

if TYPE_CHECKING:
    from .sessions import SessionRegistry

logger = get_logger(__name__)


class AccountRegistry:
    """
    Validates and submits account administration actions.

    Args:
        store: ReadModelStore used for pre-validation
        gateway: SubmissionGateway for ledger calls
        sessions: Optional SessionRegistry; sessions of a revoked account
            are ended and sessions of a demoted admin lose admin rights
    """

    def __init__(
        self,
        store: ReadModelStore,
        gateway: SubmissionGateway,
        sessions: Optional["SessionRegistry"] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._sessions = sessions

    def _require_admin(self, actor: str) -> str:
        actor = self._address(actor)
        account = self._store.get_account(actor)
        if account is None or not account.is_authorized or not account.is_admin:
            raise AuthorizationError(f"{actor} is not an admin")
        return actor

    def _require_account(self, address: str) -> Account:
        account = self._store.get_account(self._address(address))
        if account is None:
            raise AccountNotFound(f"Account {address} is not registered")
        return account

    @staticmethod
    def _address(address: str) -> str:
        try:
            return normalize_address(address)
        except ValueError as e:
            raise ValidationError(str(e)) from None

    def _admin_count(self) -> int:
        return self._store.stats().admins

    def register(
        self,
        actor: str,
        address: str,
        display_name: str,
        email: str,
        is_admin: bool = False,
    ) -> TxReceipt:
        actor = self._require_admin(actor)
        address = self._address(address)
        if self._store.get_account(address) is not None:
            raise InvalidTransition(f"Account {address} is already registered")
        try:
            payload = RegisterUserPayload(
                address=address,
                display_name=(display_name or "").strip(),
                email=(email or "").strip(),
                is_admin=is_admin,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from None

        receipt = self._gateway.submit(
            LedgerAction.REGISTER_USER,
            payload.model_dump(mode="json"),
            actor=actor,
            conflict_message=f"Account {address} was registered concurrently",
        )
        logger.info("Account registered", address=address, is_admin=is_admin)
        return receipt

    def revoke(self, actor: str, address: str) -> TxReceipt:
        actor = self._require_admin(actor)
        account = self._require_account(address)
        if not account.is_authorized:
            raise InvalidTransition(f"Account {account.address} is already revoked")
        if account.is_admin and self._admin_count() <= 1:
            raise InvalidTransition("Cannot revoke the last admin")

        receipt = self._submit(LedgerAction.REVOKE_USER, actor, account.address)
        if self._sessions is not None:
            self._sessions.revoke_for_address(account.address)
        return receipt

    def restore(self, actor: str, address: str) -> TxReceipt:
        actor = self._require_admin(actor)
        account = self._require_account(address)
        if account.is_authorized:
            raise InvalidTransition(f"Account {account.address} is already authorized")
        return self._submit(LedgerAction.RESTORE_USER, actor, account.address)

    def grant_admin(self, actor: str, address: str) -> TxReceipt:
        actor = self._require_admin(actor)
        account = self._require_account(address)
        if account.is_admin:
            raise InvalidTransition(f"Account {account.address} is already an admin")
        if not account.is_authorized:
            raise InvalidTransition(f"Account {account.address} is revoked")
        return self._submit(LedgerAction.GRANT_ADMIN, actor, account.address)

    def revoke_admin(self, actor: str, address: str) -> TxReceipt:
        actor = self._require_admin(actor)
        account = self._require_account(address)
        if not account.is_admin:
            raise InvalidTransition(f"Account {account.address} is not an admin")
        if self._admin_count() <= 1:
            raise InvalidTransition("Cannot revoke admin from the last admin")

        receipt = self._submit(LedgerAction.REVOKE_ADMIN, actor, account.address)
        if self._sessions is not None:
            for session in self._sessions.active_sessions():
                if session.address == account.address and session.is_admin:
                    self._sessions.demote(session)
        return receipt

    def _submit(self, action: LedgerAction, actor: str, address: str) -> TxReceipt:
        receipt = self._gateway.submit(
            action,
            {"address": address},
            actor=actor,
            conflict_message=f"Account {address} changed state concurrently",
        )
        logger.info(f"{action.value} confirmed", address=address, actor=actor)
        return receipt
