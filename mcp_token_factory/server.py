"""
Token Factory Server - MCP Server Implementation

This module exposes the token factory through the Model Context Protocol. The server hosts one
factory inside the process-wide sandbox network (see factory_manager) and lets clients initiate
new tokens, upgrade the factory and query derived addresses.

Key Features:
- Deterministic pool and issuer addresses, queryable before anything is deployed
- Replay-tolerant InitiateNew: repeating a request reports success without minting again
- Admin-only upgrades of the factory code and the pool template
- Per-caller rate limiting
- Failures reported by name and exit code, never with internal details

Caller identities are base58 public keys. The sandbox opens a funded account for a caller the
first time it is seen.
"""

import json
import time
from typing import Optional

from pydantic import Field, ValidationError
from solders.pubkey import Pubkey

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory import accounting
from mcp_token_factory import errors
from mcp_token_factory import factory_manager
from mcp_token_factory import rate_limiter
from mcp_token_factory.errors import RateLimitExceededError
from mcp_token_factory.factory import FactoryClient
from mcp_token_factory.network import Trace
from mcp_token_factory.schemas import EntityCode, Op

# Constants
MAX_METADATA_URI_LENGTH = 1024
MAX_CODE_JSON_LENGTH = 10000

EXIT_CODE_ERRORS = {
    cls.exit_code: cls
    for cls in (
        errors.UnauthorizedError,
        errors.PolicyViolationError,
        errors.TooMuchSupplyShareRequestedError,
        errors.NotEnoughValueToInitiateError,
        errors.AlreadyInitiatedError,
        errors.MalformedRequestError,
        errors.InsufficientBalanceError,
        errors.UnknownOperationError,
        errors.EntityNotFoundError,
    )
}

logger = get_logger(__name__)

# --- Server Setup ---
mcp = FastMCP(name="Token Factory Server")


def parse_caller(caller: str) -> Pubkey:
    """Validates a caller identity string and returns its public key."""
    if not caller or not isinstance(caller, str):
        raise ValueError("Caller must be a non-empty string")
    try:
        return Pubkey.from_string(caller.strip())
    except ValueError:
        raise ValueError(f"Invalid caller identity: {caller}")


def open_caller_account(factory: FactoryClient, caller_key: Pubkey) -> None:
    """Opens the caller's external account, refusing identities that belong to deployed entities."""
    account = factory.network.open_external(caller_key)
    if account.code is not None:
        raise ValueError(f"Invalid caller identity: {caller_key} is a {account.code.role.value} address")


def validate_metadata_uri(metadata_uri: str) -> None:
    if not metadata_uri or not isinstance(metadata_uri, str):
        raise ValueError("Metadata URI must be a non-empty string")
    if len(metadata_uri) > MAX_METADATA_URI_LENGTH:
        raise ValueError("Metadata URI is too long")


def describe_failure(trace: Trace) -> str:
    """Names the error behind the first transaction of `trace`, normally the call's root message."""
    root = trace.transactions[0]
    error_cls = EXIT_CODE_ERRORS.get(root.exit_code)
    name = error_cls.__name__ if error_cls else "UnknownError"
    return f"Error: {name} (exit code {root.exit_code})"


def parse_code(code_json: Optional[str], label: str) -> Optional[EntityCode]:
    if code_json is None:
        return None
    if len(code_json) > MAX_CODE_JSON_LENGTH:
        raise ValueError(f"{label} is too large (max 10KB)")
    return EntityCode.model_validate_json(code_json)


# --- MCP Tools ---

@mcp.tool()
async def get_factory_info(context: Context) -> str:
    """Get the factory address, balance, Configuration and the value required by each operation."""
    try:
        factory = await factory_manager.bootstrap()
        info = {
            "address": str(factory.address),
            "balance": factory.get_balance(),
            "config": factory.get_config().model_dump(mode="json"),
            "initiate_new_value": accounting.estimated_initiate_value(),
            "upgrade_value": accounting.estimated_upgrade_value(with_pool_code=False),
            "upgrade_pool_code_value": accounting.estimated_upgrade_value(
                with_pool_code=True, with_factory_code=False
            ),
            "upgrade_with_pool_code_value": accounting.estimated_upgrade_value(with_pool_code=True),
        }
        return json.dumps(info, indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error getting factory info: {e}")
        return "An unexpected error occurred while retrieving factory information."


@mcp.tool()
async def get_max_deployer_supply_percent(context: Context) -> str:
    """Get the maximum percent of supply a caller may claim for itself."""
    factory = await factory_manager.bootstrap()
    return str(factory.get_max_deployer_supply_percent())


@mcp.tool()
async def get_pool_address(
    context: Context,
    metadata_uri: str = Field(..., description="The token metadata URI."),
) -> str:
    """Get the address the pool for a metadata URI is (or will be) deployed at."""
    try:
        validate_metadata_uri(metadata_uri)
        factory = await factory_manager.bootstrap()
        return str(factory.get_pool_address(metadata_uri))
    except ValueError as e:
        logger.error(f"Validation error in get_pool_address: {e}")
        return f"Error: {e}"


@mcp.tool()
async def get_issuer_address(
    context: Context,
    metadata_uri: str = Field(..., description="The token metadata URI."),
    total_supply: int = Field(..., description="The total token supply (in base units)."),
) -> str:
    """Get the address the issuer for a metadata URI and supply is (or will be) deployed at."""
    try:
        validate_metadata_uri(metadata_uri)
        if not isinstance(total_supply, int) or total_supply < 0:
            raise ValueError("Total supply must be a non-negative integer")
        factory = await factory_manager.bootstrap()
        return str(factory.get_issuer_address(metadata_uri, total_supply))
    except ValueError as e:
        logger.error(f"Validation error in get_issuer_address: {e}")
        return f"Error: {e}"


@mcp.tool()
async def initiate_new(
    context: Context,
    caller: str = Field(..., description="The caller's identity (base58 public key)."),
    metadata_uri: str = Field(..., description="The token metadata URI."),
    total_supply: int = Field(..., description="The total token supply to mint (in base units)."),
    deployer_supply_percent: int = Field(..., description="Percent of supply minted to the caller."),
    minimal_price: int = Field(..., description="Minimal price recorded on the pool."),
    value: Optional[int] = Field(None, description="Value to attach; defaults to the estimated requirement."),
) -> str:
    """
    Deploys the pool and issuer for a token and splits its supply between the pool and the caller.

    Repeating a request whose pool already exists succeeds without minting again.

    Returns:
        str: Summary with the pool and issuer addresses and what was minted, or an error message
    """
    start_time = time.time()
    try:
        caller_key = parse_caller(caller)
        validate_metadata_uri(metadata_uri)

        if not rate_limiter.check_rate_limit(str(caller_key)):
            raise RateLimitExceededError(f"Rate limit exceeded for caller: {caller_key}")

        factory = await factory_manager.bootstrap()
        open_caller_account(factory, caller_key)
        attached = accounting.estimated_initiate_value() if value is None else value

        trace = await factory.send_initiate_new(
            caller_key, attached, metadata_uri, total_supply, deployer_supply_percent, minimal_price
        )
        duration = time.time() - start_time

        if not trace.transactions[0].success:
            logger.warning(f"InitiateNew for '{metadata_uri}' from {caller_key} rejected, duration: {duration:.3f}s")
            return describe_failure(trace)

        pool = factory.get_pool_address(metadata_uri)
        init_tx = trace.find(op=Op.pool_init)
        if not init_tx.success:
            if init_tx.exit_code == errors.AlreadyInitiatedError.exit_code:
                # The pool keeps the issuer of its first initiation.
                issuer = factory.network.run_get_method(pool, "get_pool_data").issuer
                return (f"Token '{metadata_uri}' was already initiated; nothing minted. "
                        f"Pool: {pool}, issuer: {issuer}")
            logger.error(f"Pool {pool} rejected init for '{metadata_uri}' with exit code {init_tx.exit_code}")
            return describe_failure(Trace(transactions=[init_tx]))

        mint_tx = trace.find(op=Op.mint)
        if mint_tx is not None and not mint_tx.success:
            logger.error(f"Mint for '{metadata_uri}' failed with exit code {mint_tx.exit_code}")
            return describe_failure(Trace(transactions=[mint_tx]))

        issuer = factory.get_issuer_address(metadata_uri, total_supply)
        transfers = trace.filter(op=Op.internal_transfer, success=True)
        logger.info(f"InitiateNew for '{metadata_uri}' from {caller_key} completed with "
                    f"{len(transfers)} transfer(s), duration: {duration:.3f}s")
        return (f"Token '{metadata_uri}' initiated. Pool: {pool}, issuer: {issuer}, "
                f"mint transfers: {len(transfers)}")

    except RateLimitExceededError as e:
        return str(e)
    except ValueError as e:
        logger.error(f"Validation error in initiate_new: {e}")
        return f"Error: {e}"
    except errors.FactoryError as e:
        logger.error(f"InitiateNew failed before delivery: {e}")
        return f"Error: {type(e).__name__}"
    except Exception as e:
        logger.exception(f"Unexpected error in initiate_new: {e}")
        return "An unexpected server error occurred"


@mcp.tool()
async def upgrade_factory(
    context: Context,
    caller: str = Field(..., description="The caller's identity (base58 public key)."),
    new_factory_code_json: Optional[str] = Field(None, description="Replacement factory code as JSON."),
    new_pool_code_json: Optional[str] = Field(None, description="Replacement pool template as JSON."),
    value: Optional[int] = Field(None, description="Value to attach; defaults to the estimated requirement."),
) -> str:
    """Replaces the factory code and/or the pool template. Only the factory admin may upgrade."""
    try:
        caller_key = parse_caller(caller)
        new_factory_code = parse_code(new_factory_code_json, "Factory code JSON")
        new_pool_code = parse_code(new_pool_code_json, "Pool code JSON")

        factory = await factory_manager.bootstrap()
        open_caller_account(factory, caller_key)
        attached = value
        if attached is None:
            attached = accounting.estimated_upgrade_value(
                with_pool_code=new_pool_code is not None,
                with_factory_code=new_factory_code is not None,
            )

        trace = await factory.send_upgrade(
            caller_key, attached, new_factory_code=new_factory_code, new_pool_code=new_pool_code
        )
        if not trace.transactions[0].success:
            logger.warning(f"Upgrade from {caller_key} rejected")
            return describe_failure(trace)

        factory_manager.save_snapshot()
        return "Factory upgraded successfully."

    except ValidationError as e:
        logger.error(f"Invalid code provided to upgrade_factory: {e}")
        return f"Error: Invalid code - {e}"
    except ValueError as e:
        logger.error(f"Validation error in upgrade_factory: {e}")
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error in upgrade_factory: {e}")
        return "An unexpected server error occurred"


# --- Main Execution ---
if __name__ == "__main__":
    logger.info("Starting Token Factory MCP Server...")
    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
