"""
Value Accounting for Factory Operations

The factory must never pay for a caller's deployment out of its own reserve. Every value it
sends onward (deploy reserves, the forwarded mint value) and every relay fee it is charged is
covered by the value attached to the request; the remainder goes back to the caller.

Estimated Cost of InitiateNew:
    2 * DEPLOY_RESERVE   reserves left on the new issuer and pool
  + 4 * RELAY_FEE        two deploy messages, the pool init and the mint instruction
  + SAFETY_MARGIN        covers the forwarded mint value and the excess message

Estimated Cost of Upgrade:
    RELAY_FEE (excess message) + CODE_STORAGE_FEE per replaced code blob

The issuer pays one RELAY_FEE per wallet transfer out of its deploy reserve and the forwarded
mint value; config loading requires these to cover both transfers (pool and caller).
"""
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory import config
from mcp_token_factory.errors import NotEnoughValueToInitiateError

logger = get_logger(__name__)

DEPLOY_MESSAGES = 2
INSTRUCTION_MESSAGES = 2


def estimated_initiate_value() -> int:
    """Minimal value a caller must attach to InitiateNew."""
    return (
        DEPLOY_MESSAGES * config.DEPLOY_RESERVE
        + (DEPLOY_MESSAGES + INSTRUCTION_MESSAGES) * config.RELAY_FEE
        + config.SAFETY_MARGIN
    )


def estimated_upgrade_value(with_pool_code: bool = False, with_factory_code: bool = True) -> int:
    """Minimal value a caller must attach to an Upgrade replacing the given code blobs."""
    replaced_codes = int(with_pool_code) + int(with_factory_code)
    return config.RELAY_FEE + replaced_codes * config.CODE_STORAGE_FEE


def check_sufficient(attached_value: int, estimated_cost: int) -> None:
    """
    Raises NotEnoughValueToInitiateError if `attached_value` does not cover `estimated_cost`.
    """
    if attached_value < estimated_cost:
        logger.warning(f"Attached value {attached_value} is below required {estimated_cost}")
        raise NotEnoughValueToInitiateError(
            f"Attached value {attached_value} is not enough, at least {estimated_cost} is required"
        )


def excess_after(attached_value: int, spent: int) -> int:
    """Value that can be returned to the caller once `spent` and the excess relay fee are paid."""
    return max(0, attached_value - spent - config.RELAY_FEE)
