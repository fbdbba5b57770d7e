"""
Entity Logic: Pool, Issuer and Wallet

Each deployed entity is an account holding template code and data. The code's role selects one
of the logic classes below; the logic receives one message at a time from the sandbox network
and either mutates its own account data or raises a FactoryError, in which case the network
restores the data and bounces the value.

Pool:
    Uninitialized -> Initiated, exactly once, on `pool_init` from its factory.
    A second `pool_init` raises AlreadyInitiatedError and changes nothing.

Issuer:
    On `mint` from its factory, credits each destination's wallet through an
    `internal_transfer`, deploying the wallet on first use. A mint it cannot relay to every
    destination is rejected before any wallet is credited.

Wallet:
    Accepts `internal_transfer` from its issuer and keeps the token balance.
"""
from typing import TYPE_CHECKING, Any, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError
from solders.pubkey import Pubkey

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory import config
from mcp_token_factory.addressing import derive
from mcp_token_factory.errors import (
    AlreadyInitiatedError,
    InsufficientBalanceError,
    MalformedRequestError,
    PolicyViolationError,
    UnauthorizedError,
    UnknownOperationError,
)
from mcp_token_factory.schemas import (
    EntityCode,
    EntityRole,
    InternalTransferBody,
    IssuerData,
    Message,
    MintBody,
    Op,
    PoolData,
    PoolInitBody,
    StateInit,
    WalletData,
)

if TYPE_CHECKING:
    from mcp_token_factory.network import Account, Network

logger = get_logger(__name__)

BodyT = TypeVar("BodyT", bound=BaseModel)


def parse_body(message: Message, schema: Type[BodyT]) -> BodyT:
    """Validates a message body against `schema`, raising MalformedRequestError on bad input."""
    raw = message.body.model_dump() if message.body is not None else {}
    try:
        return schema.model_validate(raw)
    except ValidationError as e:
        raise MalformedRequestError(f"Malformed {message.op.value} body: {e}")


def wallet_state_init(wallet_code: EntityCode, owner: str, issuer: str, fee_per_mille: int) -> StateInit:
    data = WalletData(owner=owner, issuer=issuer, fee_per_mille=fee_per_mille)
    return StateInit(code=wallet_code, data=data)


class EntityLogic:
    """Base class for the handler of one entity role."""

    role: EntityRole
    get_methods: Tuple[str, ...] = ()

    # Plain value transfers and repeated deploys are accepted by every entity.
    passive_ops = (Op.deploy, Op.top_up)

    async def receive(self, network: "Network", account: "Account", message: Message) -> None:
        if message.op in self.passive_ops:
            logger.debug(f"{self.role.value} {account.address} accepted {message.op.value} of {message.value}")
            return
        await self.handle(network, account, message)

    async def handle(self, network: "Network", account: "Account", message: Message) -> None:
        raise UnknownOperationError(f"{self.role.value} does not handle op '{message.op.value}'")

    def run_get_method(self, network: "Network", account: "Account", method: str, **kwargs: Any) -> Any:
        return getattr(self, method)(network, account, **kwargs)


class PoolLogic(EntityLogic):
    role = EntityRole.pool
    get_methods = ("get_pool_data",)

    async def handle(self, network: "Network", account: "Account", message: Message) -> None:
        if message.op != Op.pool_init:
            await super().handle(network, account, message)
            return

        data: PoolData = account.data
        if str(message.sender) != data.factory:
            raise UnauthorizedError(f"Pool {account.address} only accepts init from its factory")
        if data.initiated:
            raise AlreadyInitiatedError(f"Pool {account.address} is already initiated")

        body = parse_body(message, PoolInitBody)
        account.data = data.model_copy(
            update={"initiated": True, "issuer": body.issuer, "minimal_price": body.minimal_price}
        )
        logger.info(f"Pool {account.address} initiated for '{data.metadata_uri}' with issuer {body.issuer}")

    def get_pool_data(self, network: "Network", account: "Account") -> PoolData:
        return account.data.model_copy()


class IssuerLogic(EntityLogic):
    role = EntityRole.issuer
    get_methods = ("get_issuer_data", "get_wallet_address")

    async def handle(self, network: "Network", account: "Account", message: Message) -> None:
        if message.op != Op.mint:
            await super().handle(network, account, message)
            return

        data: IssuerData = account.data
        if str(message.sender) != data.factory:
            raise UnauthorizedError(f"Issuer {account.address} only mints on instruction from its factory")

        body = parse_body(message, MintBody)
        amount = sum(destination.amount for destination in body.destinations)
        if data.minted + amount > data.total_supply:
            raise PolicyViolationError(
                f"Minting {amount} would exceed total supply {data.total_supply} (already minted {data.minted})"
            )
        relay_cost = len(body.destinations) * config.RELAY_FEE
        if account.balance < relay_cost:
            raise InsufficientBalanceError(
                f"Issuer {account.address} cannot relay {len(body.destinations)} transfer(s), balance {account.balance}"
            )
        account.data = data.model_copy(update={"minted": data.minted + amount})

        issuer = str(account.address)
        for destination in body.destinations:
            state_init = wallet_state_init(data.wallet_code, destination.owner, issuer, data.fee_per_mille)
            await network.send(Message(
                sender=account.address,
                destination=derive(state_init.code, state_init.data),
                op=Op.internal_transfer,
                body=InternalTransferBody(amount=destination.amount),
                state_init=state_init,
            ))
        logger.info(f"Issuer {account.address} minted {amount} to {len(body.destinations)} wallet(s)")

    def get_issuer_data(self, network: "Network", account: "Account") -> IssuerData:
        return account.data.model_copy()

    def get_wallet_address(self, network: "Network", account: "Account", owner: str) -> Pubkey:
        data: IssuerData = account.data
        state_init = wallet_state_init(data.wallet_code, owner, str(account.address), data.fee_per_mille)
        return derive(state_init.code, state_init.data)


class WalletLogic(EntityLogic):
    role = EntityRole.wallet
    get_methods = ("get_wallet_balance", "get_wallet_data")

    async def handle(self, network: "Network", account: "Account", message: Message) -> None:
        if message.op != Op.internal_transfer:
            await super().handle(network, account, message)
            return

        data: WalletData = account.data
        if str(message.sender) != data.issuer:
            raise UnauthorizedError(f"Wallet {account.address} only accepts transfers from its issuer")

        body = parse_body(message, InternalTransferBody)
        account.data = data.model_copy(update={"balance": data.balance + body.amount})
        logger.debug(f"Wallet {account.address} of {data.owner} credited {body.amount}")

    def get_wallet_balance(self, network: "Network", account: "Account") -> int:
        return account.data.balance

    def get_wallet_data(self, network: "Network", account: "Account") -> WalletData:
        return account.data.model_copy()
