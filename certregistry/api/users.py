"""
Account Routes

Account administration is admin-only and goes through the ledger like any
other mutation. Reads come from the read model.
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..container import Container
from ..core.errors import AuthorizationError
from ..core.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ..schemas import TxReceipt
from .deps import Caller, get_container, require_admin, require_session

router = APIRouter(prefix="/users", tags=["Accounts"])


class RegisterRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    is_admin: bool = False


class AccountActionResponse(BaseModel):
    address: str
    tx_id: str
    action: str


def _action_response(receipt: TxReceipt) -> AccountActionResponse:
    return AccountActionResponse(
        address=receipt.address,
        tx_id=receipt.tx_id,
        action=receipt.action.value,
    )


@router.post("", response_model=AccountActionResponse, status_code=201)
def register_account(
    body: RegisterRequest,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    receipt = container.accounts.register(
        caller.address,
        body.address,
        body.display_name,
        body.email,
        is_admin=body.is_admin,
    )
    return _action_response(receipt)


@router.get("")
async def list_accounts(
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    result = container.queries.list_accounts(status=status, page=page, page_size=page_size)
    return {
        "data": [a.to_public_dict() for a in result.data],
        "meta": result.meta.model_dump(),
    }


@router.get("/{address}")
async def get_account(
    address: str,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    """Own account, or any account for admins."""
    account = container.queries.get_account(address)
    if account.address != caller.address and not caller.account.is_admin:
        raise AuthorizationError("Admins only for other accounts")
    return account.to_public_dict()


@router.post("/{address}/revoke", response_model=AccountActionResponse)
def revoke_account(
    address: str,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _action_response(container.accounts.revoke(caller.address, address))


@router.post("/{address}/restore", response_model=AccountActionResponse)
def restore_account(
    address: str,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _action_response(container.accounts.restore(caller.address, address))


@router.post("/{address}/grant-admin", response_model=AccountActionResponse)
def grant_admin(
    address: str,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _action_response(container.accounts.grant_admin(caller.address, address))


@router.post("/{address}/revoke-admin", response_model=AccountActionResponse)
def revoke_admin(
    address: str,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _action_response(container.accounts.revoke_admin(caller.address, address))
