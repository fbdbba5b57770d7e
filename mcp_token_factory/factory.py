"""
Factory Orchestration

The factory owns the Configuration (admin, template codes, fee and supply policy) and serves two
operations:

InitiateNew:
    1. Parse and validate the TokenRequest (malformed fields, supply share policy, attached value)
    2. Derive the pool address from (pool_code, factory, admin, metadata_uri) and the issuer
       address from (issuer_code, factory, pool, metadata_uri, total_supply, wallet_code, fee)
    3. Send a deploy-or-no-op message with a reserve to each
    4. Send `pool_init` to the pool; a replay is rejected by the pool with AlreadyInitiated,
       which the factory absorbs: the call still succeeds but nothing is minted
    5. On first initiation, send one `mint` to the issuer: pool share to the pool's wallet and,
       only when non-zero, the caller share to the caller's wallet
    6. Return the unspent value to the caller with an `excess` message

    Nothing is sent before all validation passes, so a rejected request deploys nothing and its
    value is bounced by the network.

Upgrade:
    Admin only. Replaces the factory code and/or the pool template wholesale in one step, and
    charges CODE_STORAGE_FEE per replaced blob. An upgrade replacing neither is malformed.
    Addresses never depend on the factory's own code, so upgrades leave every derived
    address unchanged; a new pool template only affects pools derived afterwards.
"""
from typing import TYPE_CHECKING, Optional, Tuple

from solders.pubkey import Pubkey

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory import accounting, config
from mcp_token_factory.addressing import derive, derive_state_init
from mcp_token_factory.allocation import allocate, mint_destinations
from mcp_token_factory.entities import EntityLogic, parse_body
from mcp_token_factory.errors import AlreadyInitiatedError, MalformedRequestError, UnauthorizedError
from mcp_token_factory.schemas import (
    EntityCode,
    EntityRole,
    ExcessBody,
    FactoryConfig,
    InitiateOutcome,
    IssuerData,
    Message,
    MintBody,
    Op,
    PoolData,
    PoolInitBody,
    StateInit,
    TokenRequest,
    UpgradeBody,
)

if TYPE_CHECKING:
    from mcp_token_factory.network import Account, Network, Trace

logger = get_logger(__name__)


def pool_state_init(factory: Pubkey, factory_config: FactoryConfig, metadata_uri: str) -> StateInit:
    data = PoolData(factory=str(factory), admin=factory_config.admin, metadata_uri=metadata_uri)
    return StateInit(code=factory_config.pool_code, data=data)


def issuer_state_init(
    factory: Pubkey,
    factory_config: FactoryConfig,
    pool: Pubkey,
    metadata_uri: str,
    total_supply: int,
) -> StateInit:
    data = IssuerData(
        factory=str(factory),
        pool=str(pool),
        metadata_uri=metadata_uri,
        total_supply=total_supply,
        wallet_code=factory_config.wallet_code,
        fee_per_mille=factory_config.fee_per_mille,
    )
    return StateInit(code=factory_config.issuer_code, data=data)


class FactoryLogic(EntityLogic):
    role = EntityRole.factory
    get_methods = (
        "get_max_deployer_supply_percent",
        "get_pool_address",
        "get_issuer_address",
        "get_factory_config",
    )

    async def handle(self, network: "Network", account: "Account", message: Message) -> None:
        if message.op == Op.initiate_new:
            await self._initiate_new(network, account, message)
        elif message.op == Op.upgrade:
            await self._upgrade(network, account, message)
        else:
            await super().handle(network, account, message)

    async def _initiate_new(self, network: "Network", account: "Account", message: Message) -> None:
        factory_config: FactoryConfig = account.data
        request = parse_body(message, TokenRequest)

        allocation = allocate(
            request.total_supply,
            request.deployer_supply_percent,
            factory_config.max_deployer_supply_percent,
        )
        accounting.check_sufficient(message.value, accounting.estimated_initiate_value())

        pool_init = pool_state_init(account.address, factory_config, request.metadata_uri)
        pool = derive_state_init(pool_init)
        issuer_init = issuer_state_init(
            account.address, factory_config, pool, request.metadata_uri, request.total_supply
        )
        issuer = derive_state_init(issuer_init)

        spent = 0
        for destination, state_init in ((issuer, issuer_init), (pool, pool_init)):
            await network.send(Message(
                sender=account.address,
                destination=destination,
                op=Op.deploy,
                value=config.DEPLOY_RESERVE,
                state_init=state_init,
            ))
            spent += config.DEPLOY_RESERVE + config.RELAY_FEE

        init_tx = await network.send(Message(
            sender=account.address,
            destination=pool,
            op=Op.pool_init,
            body=PoolInitBody(issuer=str(issuer), minimal_price=request.minimal_price),
            bounce=False,
        ))
        spent += config.RELAY_FEE

        outcome: Optional[InitiateOutcome] = None
        if init_tx.success:
            destinations = mint_destinations(str(pool), str(message.sender), allocation)
            minted = True
            if destinations:
                mint_tx = await network.send(Message(
                    sender=account.address,
                    destination=issuer,
                    op=Op.mint,
                    value=config.MINT_FORWARD_VALUE,
                    body=MintBody(destinations=destinations),
                ))
                spent += config.MINT_FORWARD_VALUE + config.RELAY_FEE
                minted = mint_tx.success
            if minted:
                outcome = InitiateOutcome.minted
                logger.info(f"Initiated '{request.metadata_uri}': pool={pool}, issuer={issuer}, "
                            f"pool_share={allocation.pool_share}, caller_share={allocation.caller_share}")
            else:
                logger.error(f"Issuer {issuer} rejected mint for '{request.metadata_uri}' "
                             f"with exit code {mint_tx.exit_code}, pool {pool} initiated without supply")
        elif init_tx.exit_code == AlreadyInitiatedError.exit_code:
            outcome = InitiateOutcome.already_initiated
            logger.warning(f"Replay of '{request.metadata_uri}' from {message.sender}: pool {pool} already initiated, nothing minted")
        else:
            logger.error(f"Pool {pool} rejected init with exit code {init_tx.exit_code}, nothing minted")

        await network.send(Message(
            sender=account.address,
            destination=message.sender,
            op=Op.excess,
            value=accounting.excess_after(message.value, spent),
            body=ExcessBody(outcome=outcome),
            bounce=False,
        ))

    async def _upgrade(self, network: "Network", account: "Account", message: Message) -> None:
        factory_config: FactoryConfig = account.data
        if str(message.sender) != factory_config.admin:
            raise UnauthorizedError(f"Only the factory admin can upgrade, got {message.sender}")

        body = parse_body(message, UpgradeBody)
        with_factory_code = body.new_factory_code is not None
        with_pool_code = body.new_pool_code is not None
        if not with_factory_code and not with_pool_code:
            raise MalformedRequestError("Upgrade must replace the factory code, the pool code or both")
        if with_factory_code and body.new_factory_code.role != EntityRole.factory:
            raise MalformedRequestError("New factory code must have the factory role")
        if with_pool_code and body.new_pool_code.role != EntityRole.pool:
            raise MalformedRequestError("New pool code must have the pool role")

        required = accounting.estimated_upgrade_value(with_pool_code, with_factory_code)
        accounting.check_sufficient(message.value, required)

        new_code = body.new_factory_code or account.code
        new_config = factory_config
        if with_pool_code:
            new_config = factory_config.model_copy(update={"pool_code": body.new_pool_code})
        storage_fee = config.CODE_STORAGE_FEE * (int(with_factory_code) + int(with_pool_code))

        # Code and Configuration are swapped together.
        account.code, account.data = new_code, new_config
        network.burn(account, storage_fee)
        logger.info(f"Factory {account.address} upgraded: code revision {new_code.revision}, "
                    f"pool code revision {new_config.pool_code.revision}")

        await network.send(Message(
            sender=account.address,
            destination=message.sender,
            op=Op.excess,
            value=accounting.excess_after(message.value, storage_fee),
            body=ExcessBody(),
            bounce=False,
        ))

    # --- Getters ---

    def get_max_deployer_supply_percent(self, network: "Network", account: "Account") -> int:
        return account.data.max_deployer_supply_percent

    def get_pool_address(self, network: "Network", account: "Account", metadata_uri: str) -> Pubkey:
        return derive_state_init(pool_state_init(account.address, account.data, metadata_uri))

    def get_issuer_address(
        self, network: "Network", account: "Account", metadata_uri: str, total_supply: int
    ) -> Pubkey:
        pool = self.get_pool_address(network, account, metadata_uri)
        return derive_state_init(
            issuer_state_init(account.address, account.data, pool, metadata_uri, total_supply)
        )

    def get_factory_config(self, network: "Network", account: "Account") -> FactoryConfig:
        return account.data.model_copy()


class FactoryClient:
    """Caller-side wrapper around a deployed factory address."""

    def __init__(self, network: "Network", address: Pubkey):
        self.network = network
        self.address = address

    @classmethod
    async def deploy(
        cls,
        network: "Network",
        sender: Pubkey,
        factory_config: FactoryConfig,
        value: Optional[int] = None,
        code: Optional[EntityCode] = None,
    ) -> Tuple["FactoryClient", "Trace"]:
        state_init = StateInit(code=code or EntityCode(role=EntityRole.factory), data=factory_config)
        address = derive(state_init.code, state_init.data)
        trace = await network.send_external(Message(
            sender=sender,
            destination=address,
            op=Op.deploy,
            value=config.FACTORY_DEPLOY_VALUE if value is None else value,
            state_init=state_init,
        ))
        logger.info(f"Factory deployed at {address} by {sender}")
        return cls(network, address), trace

    async def send_initiate_new(
        self,
        sender: Pubkey,
        value: int,
        metadata_uri: str,
        total_supply: int,
        deployer_supply_percent: int,
        minimal_price: int,
    ) -> "Trace":
        # Unvalidated on the way out; the factory parses the body.
        request = TokenRequest.model_construct(
            metadata_uri=metadata_uri,
            total_supply=total_supply,
            deployer_supply_percent=deployer_supply_percent,
            minimal_price=minimal_price,
        )
        return await self.network.send_external(Message(
            sender=sender, destination=self.address, op=Op.initiate_new, value=value, body=request,
        ))

    async def send_upgrade(
        self,
        sender: Pubkey,
        value: int,
        new_factory_code: Optional[EntityCode] = None,
        new_pool_code: Optional[EntityCode] = None,
    ) -> "Trace":
        body = UpgradeBody(new_factory_code=new_factory_code, new_pool_code=new_pool_code)
        return await self.network.send_external(Message(
            sender=sender, destination=self.address, op=Op.upgrade, value=value, body=body,
        ))

    async def send_top_up(self, sender: Pubkey, value: int) -> "Trace":
        return await self.network.send_external(Message(
            sender=sender, destination=self.address, op=Op.top_up, value=value,
        ))

    # --- Read-only queries ---

    def get_max_deployer_supply_percent(self) -> int:
        return self.network.run_get_method(self.address, "get_max_deployer_supply_percent")

    def get_pool_address(self, metadata_uri: str) -> Pubkey:
        return self.network.run_get_method(self.address, "get_pool_address", metadata_uri=metadata_uri)

    def get_issuer_address(self, metadata_uri: str, total_supply: int) -> Pubkey:
        return self.network.run_get_method(
            self.address, "get_issuer_address", metadata_uri=metadata_uri, total_supply=total_supply
        )

    def get_config(self) -> FactoryConfig:
        return self.network.run_get_method(self.address, "get_factory_config")

    def get_balance(self) -> int:
        return self.network.get_balance(self.address)
