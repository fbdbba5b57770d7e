import os
import logging
from typing import Optional
from solders.keypair import Keypair
from dotenv import load_dotenv

# Import custom errors
from mcp_token_factory.errors import ConfigurationError

"""
Configuration Management for the Token Factory

This module handles all configuration loading, validation, and management for the token factory
sandbox and its MCP server. It loads settings from environment variables with sensible defaults
and validates ranges so the factory can never be deployed with an impossible policy.

Configuration Sources (in order of precedence):
1. Environment variables
2. Default values defined in this module
3. Configuration validation and type conversion

Value Units:
    All value amounts are integer nano-units (10**9 per whole coin).

Environment Variables:
    FACTORY_ADMIN_SEED: Comma-separated seed bytes for the factory admin keypair
    FEE_PER_MILLE: Fee policy parameter threaded to issuers and wallets (0-1000)
    MAX_DEPLOYER_SUPPLY_PERCENT: Upper bound on the caller's share of supply (0-100)
    DEPLOY_RESERVE: Value left on each newly deployed pool and issuer
    RELAY_FEE: Cost charged to the sender of every message
    MINT_FORWARD_VALUE: Value forwarded to the issuer with a mint instruction
    SAFETY_MARGIN: Extra value required on top of reserves and relay fees
    CODE_STORAGE_FEE: Fee per code blob replaced by an upgrade
    FACTORY_DEPLOY_VALUE: Initial balance the factory is deployed with
    TREASURY_BALANCE: Balance given to sandbox caller accounts on first use
    RATE_LIMIT_PER_MINUTE: Rate limit per caller identity
    FACTORY_STATE_DIR: Directory for configuration snapshots
"""

# Set up logger
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def validate_value_accounting(
    deploy_reserve: int, relay_fee: int, mint_forward_value: int, safety_margin: int
) -> None:
    """Rejects value constants under which an InitiateNew could not be paid for in full."""
    # The margin pays for the forwarded mint value and the excess message.
    if mint_forward_value + relay_fee > safety_margin:
        raise ConfigurationError("SAFETY_MARGIN must cover MINT_FORWARD_VALUE plus one RELAY_FEE")
    # The issuer relays one transfer to the pool's wallet and one to the caller's.
    if deploy_reserve + mint_forward_value < 2 * relay_fee:
        raise ConfigurationError("DEPLOY_RESERVE plus MINT_FORWARD_VALUE must cover two RELAY_FEEs")


def _load_admin_keypair() -> Keypair:
    """Load the factory admin keypair from environment with validation."""
    seed_str = os.getenv("FACTORY_ADMIN_SEED", ",".join(["1"] * 32))

    try:
        # Parse comma-separated integers
        seed_parts = [x.strip() for x in seed_str.split(",")]
        if len(seed_parts) != 32:
            raise ValueError(f"FACTORY_ADMIN_SEED must contain exactly 32 comma-separated integers, got {len(seed_parts)}")

        seed_bytes = bytes([int(x) for x in seed_parts])
        admin = Keypair.from_seed(seed_bytes)
        logger.info(f"Successfully loaded factory admin: {admin.pubkey()}")
        return admin

    except (ValueError, TypeError) as e:
        logger.warning(f"Error loading FACTORY_ADMIN_SEED: {e}. Using a default insecure seed for development.")
        # Fallback to a default (insecure) seed if parsing fails
        return Keypair.from_seed(bytes([1] * 32))


try:
    NANO_PER_COIN = 10**9

    # --- Admin ---
    FACTORY_ADMIN = _load_admin_keypair()

    # --- Factory Policy ---
    FEE_PER_MILLE = _get_env_int("FEE_PER_MILLE", 10, min_val=0, max_val=1000)
    MAX_DEPLOYER_SUPPLY_PERCENT = _get_env_int("MAX_DEPLOYER_SUPPLY_PERCENT", 5, min_val=0, max_val=100)

    # --- Value Accounting ---
    DEPLOY_RESERVE = _get_env_int("DEPLOY_RESERVE", 50_000_000, min_val=0)
    RELAY_FEE = _get_env_int("RELAY_FEE", 10_000_000, min_val=0)
    MINT_FORWARD_VALUE = _get_env_int("MINT_FORWARD_VALUE", 20_000_000, min_val=0)
    SAFETY_MARGIN = _get_env_int("SAFETY_MARGIN", 50_000_000, min_val=0)
    CODE_STORAGE_FEE = _get_env_int("CODE_STORAGE_FEE", 5_000_000, min_val=0)
    FACTORY_DEPLOY_VALUE = _get_env_int("FACTORY_DEPLOY_VALUE", 500_000_000, min_val=0)

    validate_value_accounting(DEPLOY_RESERVE, RELAY_FEE, MINT_FORWARD_VALUE, SAFETY_MARGIN)

    # --- Sandbox ---
    TREASURY_BALANCE = _get_env_int("TREASURY_BALANCE", 1_000_000 * NANO_PER_COIN, min_val=0)

    # --- Rate Limiting ---
    RATE_LIMIT_PER_MINUTE = _get_env_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1, max_val=1000)

    # --- Directories ---
    FACTORY_STATE_DIR = _get_env_str("FACTORY_STATE_DIR", "factory_state")

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
