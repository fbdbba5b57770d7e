import asyncio

import pytest
import pytest_asyncio

from mcp_token_factory import accounting, config
from mcp_token_factory.errors import (
    AlreadyInitiatedError,
    InsufficientBalanceError,
    MalformedRequestError,
    NotEnoughValueToInitiateError,
    TooMuchSupplyShareRequestedError,
    UnauthorizedError,
    UnknownGetMethodError,
)
from mcp_token_factory.factory import FactoryClient
from mcp_token_factory.network import Network
from mcp_token_factory.schemas import EntityCode, EntityRole, FactoryConfig, Message, Op, PoolInitBody

# normal values, far from edge cases
TOTAL_SUPPLY = 100_000_000_000
MINIMAL_PRICE = 1_000_000
METADATA_URI = "https://some.example.com/jetton-metadata.json"

EXTENDED_GETTER = "additional_getter"
EXTENDED_VALUE = 12345


def make_factory_config(admin) -> FactoryConfig:
    return FactoryConfig(
        admin=str(admin),
        issuer_code=EntityCode(role=EntityRole.issuer),
        wallet_code=EntityCode(role=EntityRole.wallet),
        pool_code=EntityCode(role=EntityRole.pool),
        fee_per_mille=10,
        max_deployer_supply_percent=5,
    )


class FactoryEnv:
    """Network, funded callers and a deployed factory, plus a wrapper to DRY the tests."""

    def __init__(self, network: Network, deployer, non_deployer, factory: FactoryClient):
        self.network = network
        self.deployer = deployer
        self.non_deployer = non_deployer
        self.factory = factory

    async def initiate(
        self,
        total_supply=TOTAL_SUPPLY,
        deployer_supply_percent=None,
        minimal_price=MINIMAL_PRICE,
        metadata_uri=METADATA_URI,
        value=None,
        sender=None,
    ):
        if deployer_supply_percent is None:
            deployer_supply_percent = self.factory.get_max_deployer_supply_percent()
        return await self.factory.send_initiate_new(
            sender or self.deployer,
            accounting.estimated_initiate_value() if value is None else value,
            metadata_uri,
            total_supply,
            deployer_supply_percent,
            minimal_price,
        )

    def wallet_balance(self, address) -> int:
        return self.network.run_get_method(address, "get_wallet_balance")


async def deploy_env() -> FactoryEnv:
    network = Network()
    deployer = network.treasury("deployer")
    non_deployer = network.treasury("nonDeployer")

    factory, trace = await FactoryClient.deploy(network, deployer, make_factory_config(deployer))
    assert trace.has_transaction(sender=deployer, destination=factory.address, deploy=True, success=True)
    return FactoryEnv(network, deployer, non_deployer, factory)


@pytest_asyncio.fixture(params=[False, True], ids=["fresh", "after_noop_upgrade"])
async def env(request):
    factory_env = await deploy_env()
    if request.param:
        # i.e. the same code as before
        trace = await factory_env.factory.send_upgrade(
            factory_env.deployer,
            accounting.estimated_upgrade_value(False),
            new_factory_code=EntityCode(role=EntityRole.factory),
        )
        assert not trace.failed
    return factory_env


# --- InitiateNew ---

@pytest.mark.asyncio
async def test_deploys_pool_issuer_and_mints(env):
    deployer_supply_percent = env.factory.get_max_deployer_supply_percent()
    trace = await env.initiate(deployer_supply_percent=deployer_supply_percent)

    assert not trace.failed

    pool = env.factory.get_pool_address(METADATA_URI)
    issuer = env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY)
    assert trace.has_transaction(op=Op.deploy, destination=pool, deploy=True)
    assert trace.has_transaction(op=Op.deploy, destination=issuer, deploy=True)
    assert trace.has_transaction(op=Op.pool_init, destination=pool, success=True)
    assert trace.has_transaction(op=Op.mint, destination=issuer, success=True)

    internal_transfers = trace.filter(op=Op.internal_transfer)
    assert len(internal_transfers) == 2

    expected_caller_share = TOTAL_SUPPLY * deployer_supply_percent // 100
    pool_wallet, deployer_wallet = (tx.destination for tx in internal_transfers)
    assert env.wallet_balance(pool_wallet) == TOTAL_SUPPLY - expected_caller_share
    assert env.wallet_balance(deployer_wallet) == expected_caller_share

    assert pool_wallet == env.network.run_get_method(issuer, "get_wallet_address", owner=str(pool))
    assert deployer_wallet == env.network.run_get_method(issuer, "get_wallet_address", owner=str(env.deployer))


@pytest.mark.asyncio
async def test_five_percent_split(env):
    trace = await env.initiate(total_supply=100_000_000_000, deployer_supply_percent=5)

    pool_wallet, deployer_wallet = (tx.destination for tx in trace.filter(op=Op.internal_transfer))
    assert env.wallet_balance(pool_wallet) == 95_000_000_000
    assert env.wallet_balance(deployer_wallet) == 5_000_000_000


@pytest.mark.asyncio
async def test_records_pool_state(env):
    await env.initiate()

    pool = env.factory.get_pool_address(METADATA_URI)
    issuer = env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY)
    pool_data = env.network.run_get_method(pool, "get_pool_data")
    assert pool_data.initiated is True
    assert pool_data.issuer == str(issuer)
    assert pool_data.minimal_price == MINIMAL_PRICE
    assert pool_data.factory == str(env.factory.address)

    issuer_data = env.network.run_get_method(issuer, "get_issuer_data")
    assert issuer_data.minted == TOTAL_SUPPLY
    assert issuer_data.pool == str(pool)
    assert issuer_data.fee_per_mille == 10


@pytest.mark.asyncio
async def test_does_not_mint_again_on_replay(env):
    deployer_supply_percent = env.factory.get_max_deployer_supply_percent()
    first = await env.initiate(deployer_supply_percent=deployer_supply_percent)
    pool_wallet = first.filter(op=Op.internal_transfer)[0].destination
    pool_balance = env.wallet_balance(pool_wallet)

    # even with modified params, the pool should be the same
    replay = await env.initiate(
        total_supply=TOTAL_SUPPLY * 2,
        deployer_supply_percent=deployer_supply_percent - 1,
        minimal_price=MINIMAL_PRICE * 2,
    )

    assert replay.has_transaction(
        sender=env.factory.address,
        op=Op.pool_init,
        exit_code=AlreadyInitiatedError.exit_code,
    )
    assert replay.transactions[0].success
    assert not replay.has_transaction(op=Op.mint)
    assert not replay.has_transaction(op=Op.internal_transfer)
    assert env.wallet_balance(pool_wallet) == pool_balance

    pool_data = env.network.run_get_method(env.factory.get_pool_address(METADATA_URI), "get_pool_data")
    assert pool_data.minimal_price == MINIMAL_PRICE


@pytest.mark.asyncio
async def test_identical_replay_mints_exactly_once(env):
    first = await env.initiate()
    replay = await env.initiate()

    transfers = first.filter(op=Op.internal_transfer) + replay.filter(op=Op.internal_transfer)
    assert sum(env.wallet_balance(tx.destination) for tx in transfers) == TOTAL_SUPPLY
    assert replay.has_transaction(op=Op.pool_init, exit_code=AlreadyInitiatedError.exit_code)
    assert not replay.has_transaction(op=Op.deploy, deploy=True)
    assert replay.has_transaction(op=Op.excess, destination=env.deployer)


@pytest.mark.asyncio
async def test_concurrent_identical_requests_mint_once(env):
    traces = await asyncio.gather(env.initiate(), env.initiate(), env.initiate())

    minted = [trace for trace in traces if trace.has_transaction(op=Op.mint)]
    replays = [
        trace for trace in traces
        if trace.has_transaction(op=Op.pool_init, exit_code=AlreadyInitiatedError.exit_code)
    ]
    assert len(minted) == 1
    assert len(replays) == 2
    assert all(trace.transactions[0].success for trace in traces)

    issuer = env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY)
    assert env.network.run_get_method(issuer, "get_issuer_data").minted == TOTAL_SUPPLY


@pytest.mark.asyncio
async def test_concurrent_different_requests_are_independent(env):
    first_uri = "https://some.example.com/first.json"
    second_uri = "https://some.example.com/second.json"
    first, second = await asyncio.gather(
        env.initiate(metadata_uri=first_uri),
        env.initiate(metadata_uri=second_uri),
    )

    assert not first.failed and not second.failed
    assert len(first.filter(op=Op.internal_transfer)) == 2
    assert len(second.filter(op=Op.internal_transfer)) == 2
    assert env.factory.get_pool_address(first_uri) != env.factory.get_pool_address(second_uri)


@pytest.mark.asyncio
async def test_balance_not_decreased_after_deploy(env):
    balance_before = env.factory.get_balance()

    await env.initiate()
    assert env.factory.get_balance() >= balance_before

    await env.initiate()
    assert env.factory.get_balance() >= balance_before


@pytest.mark.asyncio
async def test_rejects_value_below_estimate(env):
    balance_before = env.factory.get_balance()
    caller_balance_before = env.network.get_balance(env.deployer)
    value = accounting.estimated_initiate_value() - 1

    trace = await env.initiate(value=value)

    assert trace.has_transaction(success=False, exit_code=NotEnoughValueToInitiateError.exit_code, bounced=True)
    assert not trace.has_transaction(op=Op.deploy)
    assert env.factory.get_balance() == balance_before
    # the caller only loses the fees of the request and of its bounce
    assert caller_balance_before - env.network.get_balance(env.deployer) == 2 * config.RELAY_FEE
    assert env.factory.get_pool_address(METADATA_URI) not in env.network.accounts


@pytest.mark.asyncio
async def test_rejects_too_much_supply_share(env):
    deployer_supply_percent = env.factory.get_max_deployer_supply_percent() + 1

    trace = await env.initiate(deployer_supply_percent=deployer_supply_percent)

    assert trace.has_transaction(success=False, exit_code=TooMuchSupplyShareRequestedError.exit_code)
    assert len(trace.transactions) == 1
    assert env.factory.get_pool_address(METADATA_URI) not in env.network.accounts


@pytest.mark.asyncio
async def test_rejects_malformed_request(env):
    trace = await env.initiate(total_supply=-1)

    assert trace.has_transaction(success=False, exit_code=MalformedRequestError.exit_code)
    assert len(trace.transactions) == 1


@pytest.mark.asyncio
async def test_mints_only_to_pool_when_caller_share_rounds_to_zero(env):
    trace = await env.initiate(total_supply=1, deployer_supply_percent=1)

    internal_transfers = trace.filter(op=Op.internal_transfer)
    assert len(internal_transfers) == 1
    assert env.wallet_balance(internal_transfers[0].destination) == 1


@pytest.mark.asyncio
async def test_mints_only_to_pool_when_no_share_requested(env):
    trace = await env.initiate(deployer_supply_percent=0)

    internal_transfers = trace.filter(op=Op.internal_transfer)
    assert len(internal_transfers) == 1
    assert env.wallet_balance(internal_transfers[0].destination) == TOTAL_SUPPLY


@pytest.mark.asyncio
async def test_pool_rejects_init_from_others(env):
    await env.initiate()
    pool = env.factory.get_pool_address(METADATA_URI)

    trace = await env.network.send_external(Message(
        sender=env.non_deployer,
        destination=pool,
        op=Op.pool_init,
        body=PoolInitBody(issuer=str(env.non_deployer), minimal_price=0),
    ))

    assert trace.has_transaction(success=False, exit_code=UnauthorizedError.exit_code)
    assert env.network.run_get_method(pool, "get_pool_data").issuer != str(env.non_deployer)


@pytest.mark.asyncio
async def test_entity_cannot_send_external_messages(env):
    balance_before = env.factory.get_balance()

    with pytest.raises(UnauthorizedError):
        await asyncio.wait_for(env.initiate(sender=env.factory.address), timeout=5)

    assert env.factory.get_balance() == balance_before
    assert env.factory.get_pool_address(METADATA_URI) not in env.network.accounts


@pytest.mark.asyncio
@pytest.mark.parametrize("mint_forward_value", [0, config.RELAY_FEE], ids=["no_relay_fee", "one_relay_fee"])
async def test_unaffordable_mint_credits_no_wallet(env, monkeypatch, mint_forward_value):
    # values the config loader rejects, patched in after loading
    monkeypatch.setattr(config, "DEPLOY_RESERVE", 0)
    monkeypatch.setattr(config, "MINT_FORWARD_VALUE", mint_forward_value)
    balance_before = env.factory.get_balance()

    trace = await env.initiate()

    assert trace.transactions[0].success
    assert trace.has_transaction(op=Op.mint, success=False, exit_code=InsufficientBalanceError.exit_code)
    assert not trace.has_transaction(op=Op.internal_transfer)
    issuer = env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY)
    assert env.network.run_get_method(issuer, "get_issuer_data").minted == 0
    assert env.factory.get_balance() >= balance_before


# --- Upgrade ---

@pytest.mark.asyncio
async def test_upgradable_by_admin(env):
    trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(False),
        new_factory_code=EntityCode(role=EntityRole.factory),
    )
    assert not trace.failed


@pytest.mark.asyncio
async def test_not_upgradable_by_non_admin(env):
    mint_trace = await env.initiate()
    wallets = [tx.destination for tx in mint_trace.filter(op=Op.internal_transfer)]
    pool = env.factory.get_pool_address(METADATA_URI)
    issuer = env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY)

    config_before = env.factory.get_config()
    code_before = env.network.get_account(env.factory.address).code
    balance_before = env.factory.get_balance()
    pool_data_before = env.network.run_get_method(pool, "get_pool_data")
    issuer_data_before = env.network.run_get_method(issuer, "get_issuer_data")
    wallet_balances_before = [env.wallet_balance(wallet) for wallet in wallets]

    trace = await env.factory.send_upgrade(
        env.non_deployer,
        accounting.estimated_upgrade_value(True),
        new_factory_code=EntityCode(role=EntityRole.factory, revision="2"),
        new_pool_code=EntityCode(role=EntityRole.pool, revision="2"),
    )

    assert trace.has_transaction(success=False, exit_code=UnauthorizedError.exit_code)
    assert env.factory.get_config() == config_before
    assert env.network.get_account(env.factory.address).code == code_before
    assert env.factory.get_balance() == balance_before
    assert env.factory.get_pool_address(METADATA_URI) == pool
    assert env.factory.get_issuer_address(METADATA_URI, TOTAL_SUPPLY) == issuer
    assert env.network.run_get_method(pool, "get_pool_data") == pool_data_before
    assert env.network.run_get_method(issuer, "get_issuer_data") == issuer_data_before
    assert [env.wallet_balance(wallet) for wallet in wallets] == wallet_balances_before
    assert len(wallets) == 2


@pytest.mark.asyncio
async def test_upgrade_rejects_underpayment():
    env = await deploy_env()

    trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(with_pool_code=True, with_factory_code=False) - 1,
        new_pool_code=EntityCode(role=EntityRole.pool, revision="2"),
    )

    assert trace.has_transaction(success=False, exit_code=NotEnoughValueToInitiateError.exit_code)
    assert env.factory.get_config().pool_code.revision == "1"


@pytest.mark.asyncio
async def test_upgrade_rejects_code_with_wrong_role():
    env = await deploy_env()

    trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(True),
        new_factory_code=EntityCode(role=EntityRole.factory, revision="2"),
        new_pool_code=EntityCode(role=EntityRole.wallet, revision="2"),
    )

    assert trace.has_transaction(success=False, exit_code=MalformedRequestError.exit_code)
    # neither replacement applies
    assert env.network.get_account(env.factory.address).code.revision == "1"
    assert env.factory.get_config().pool_code.role == EntityRole.pool


@pytest.mark.asyncio
async def test_upgrade_without_codes_is_rejected():
    env = await deploy_env()
    balance_before = env.factory.get_balance()
    caller_balance_before = env.network.get_balance(env.deployer)

    trace = await env.factory.send_upgrade(env.deployer, accounting.estimated_upgrade_value(True))

    assert trace.has_transaction(success=False, exit_code=MalformedRequestError.exit_code, bounced=True)
    assert env.factory.get_balance() == balance_before
    assert caller_balance_before - env.network.get_balance(env.deployer) == 2 * config.RELAY_FEE


@pytest.mark.asyncio
async def test_upgrade_charges_only_replaced_codes():
    env = await deploy_env()
    balance_before = env.factory.get_balance()
    burned_before = env.network.burned_fees

    trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(with_pool_code=True, with_factory_code=False),
        new_pool_code=EntityCode(role=EntityRole.pool, revision="2"),
    )

    assert not trace.failed
    assert env.factory.get_config().pool_code.revision == "2"
    assert env.factory.get_balance() == balance_before
    # request fee, one code blob and the excess message fee
    assert env.network.burned_fees - burned_before == 2 * config.RELAY_FEE + config.CODE_STORAGE_FEE


@pytest.mark.asyncio
async def test_upgrade_keeps_factory_balance():
    env = await deploy_env()
    balance_before = env.factory.get_balance()

    await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(with_pool_code=True, with_factory_code=False) * 3,
        new_pool_code=EntityCode(role=EntityRole.pool, revision="2"),
    )

    assert env.factory.get_balance() == balance_before


@pytest.mark.asyncio
async def test_upgraded_factory_has_extended_functionality():
    env = await deploy_env()
    address_before = env.factory.address
    pool_before = env.factory.get_pool_address(METADATA_URI)

    trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(False),
        new_factory_code=EntityCode(
            role=EntityRole.factory, revision="2", getters={EXTENDED_GETTER: EXTENDED_VALUE}
        ),
    )
    assert not trace.failed

    assert env.network.run_get_method(env.factory.address, EXTENDED_GETTER) == EXTENDED_VALUE
    assert env.factory.address == address_before
    assert env.factory.get_pool_address(METADATA_URI) == pool_before

    # functionality is preserved
    mint_trace = await env.initiate()
    assert not mint_trace.failed
    assert len(mint_trace.filter(op=Op.internal_transfer)) == 2


@pytest.mark.asyncio
async def test_upgraded_pool_code_applies_only_to_new_pools():
    env = await deploy_env()
    old_uri = "https://some.example.com/before-upgrade.json"
    await env.initiate(metadata_uri=old_uri)
    old_pool = env.factory.get_pool_address(old_uri)

    upgrade_trace = await env.factory.send_upgrade(
        env.deployer,
        accounting.estimated_upgrade_value(with_pool_code=True, with_factory_code=False),
        new_pool_code=EntityCode(role=EntityRole.pool, revision="2", getters={EXTENDED_GETTER: EXTENDED_VALUE}),
    )
    assert not upgrade_trace.failed

    trace = await env.initiate(deployer_supply_percent=0)
    assert not trace.failed
    pool = env.factory.get_pool_address(METADATA_URI)
    assert trace.has_transaction(op=Op.deploy, destination=pool, deploy=True)
    assert env.network.run_get_method(pool, EXTENDED_GETTER) == EXTENDED_VALUE

    # the pool deployed before the upgrade keeps its original template
    assert env.network.get_account(old_pool).code.revision == "1"
    with pytest.raises(UnknownGetMethodError):
        env.network.run_get_method(old_pool, EXTENDED_GETTER)
    assert env.factory.get_pool_address(old_uri) != old_pool
