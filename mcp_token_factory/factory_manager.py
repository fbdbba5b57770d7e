import asyncio
import json
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ValidationError

from mcp_token_factory import config
from mcp_token_factory.factory import FactoryClient
from mcp_token_factory.network import Network
from mcp_token_factory.schemas import EntityCode, EntityRole, FactoryConfig
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# Determine the absolute path to the directory containing this file
MODULE_DIR = Path(__file__).parent.resolve()
SNAPSHOT_FILE_NAME = "factory.json"

# Process-wide sandbox hosting the factory served by the MCP server
network: Optional[Network] = None
factory: Optional[FactoryClient] = None
_deployed: Optional[Tuple[EntityCode, FactoryConfig]] = None  # code and Configuration the factory was deployed with

_bootstrap_lock: Optional[asyncio.Lock] = None


class FactorySnapshot(BaseModel):
    """Deploy-time state init plus the current code and Configuration of the factory."""
    deployed_code: EntityCode
    deployed_config: FactoryConfig
    code: EntityCode
    config: FactoryConfig


def default_factory_config() -> FactoryConfig:
    """Builds the Configuration a fresh factory is deployed with."""
    return FactoryConfig(
        admin=str(config.FACTORY_ADMIN.pubkey()),
        issuer_code=EntityCode(role=EntityRole.issuer),
        wallet_code=EntityCode(role=EntityRole.wallet),
        pool_code=EntityCode(role=EntityRole.pool),
        fee_per_mille=config.FEE_PER_MILLE,
        max_deployer_supply_percent=config.MAX_DEPLOYER_SUPPLY_PERCENT,
    )


def _snapshot_path(state_dir_name: str) -> Path:
    return MODULE_DIR / state_dir_name / SNAPSHOT_FILE_NAME


def load_snapshot(state_dir_name: str = config.FACTORY_STATE_DIR) -> Optional[FactorySnapshot]:
    """
    Loads the factory snapshot saved by a previous run.

    Args:
        state_dir_name: Directory, relative to this module, holding the snapshot file.

    Returns:
        The validated snapshot, or None if there is none or it cannot be read.
    """
    file_path = _snapshot_path(state_dir_name)
    if not file_path.is_file():
        logger.info(f"No factory snapshot at {file_path}, a fresh factory will be deployed")
        return None

    try:
        with open(file_path, "r") as f:
            snapshot = FactorySnapshot.model_validate(json.load(f))
        logger.info(f"Loaded factory snapshot from {file_path}")
        return snapshot
    except json.JSONDecodeError:
        logger.error(f"Error decoding JSON from file: {file_path}")
    except ValidationError as e:
        logger.error(f"Invalid factory snapshot in file {file_path}: {e}")
    return None


def save_snapshot(state_dir_name: str = config.FACTORY_STATE_DIR) -> bool:
    """Saves the deploy-time and current code and Configuration of the served factory."""
    if network is None or factory is None or _deployed is None:
        logger.warning("No factory bootstrapped, nothing to save")
        return False

    account = network.get_account(factory.address)
    snapshot = FactorySnapshot(
        deployed_code=_deployed[0],
        deployed_config=_deployed[1],
        code=account.code,
        config=account.data,
    )
    file_path = _snapshot_path(state_dir_name)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(file_path, "w") as f:
            json.dump(snapshot.model_dump(mode="json"), f, indent=4)
        logger.info(f"Saved factory snapshot to {file_path}")
        return True
    except OSError as e:
        logger.error(f"Error saving factory snapshot to {file_path}: {e}")
        return False


async def bootstrap(state_dir_name: str = config.FACTORY_STATE_DIR) -> FactoryClient:
    """Deploys the served factory once per process, restoring a saved snapshot if present."""
    global network, factory, _deployed, _bootstrap_lock

    if _bootstrap_lock is None:
        _bootstrap_lock = asyncio.Lock()
    async with _bootstrap_lock:
        if factory is not None:
            return factory

        snapshot = load_snapshot(state_dir_name)
        if snapshot is not None:
            deployed_code, deployed_config = snapshot.deployed_code, snapshot.deployed_config
        else:
            deployed_code, deployed_config = EntityCode(role=EntityRole.factory), default_factory_config()

        new_network = Network()
        admin = config.FACTORY_ADMIN.pubkey()
        new_network.open_external(admin)
        client, trace = await FactoryClient.deploy(new_network, admin, deployed_config, code=deployed_code)
        if trace.failed:
            raise RuntimeError(f"Factory deployment failed with exit code {trace.failed[0].exit_code}")

        if snapshot is not None:
            account = new_network.get_account(client.address)
            account.code, account.data = snapshot.code, snapshot.config
            logger.info(f"Restored factory {client.address} to code revision {snapshot.code.revision}")

        network, factory, _deployed = new_network, client, (deployed_code, deployed_config)
        save_snapshot(state_dir_name)
        return factory


def get_factory() -> Optional[FactoryClient]:
    """Returns the served factory, if bootstrapped."""
    return factory


def reset() -> None:
    """Forgets the served factory so the next bootstrap deploys a new one."""
    global network, factory, _deployed, _bootstrap_lock
    network, factory, _deployed, _bootstrap_lock = None, None, None, None
    logger.debug("Factory manager reset")
