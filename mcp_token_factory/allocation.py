"""
Supply Allocation Policy

Splits a freshly minted supply between the pool and the requesting caller. The caller's
share is floored; the integer-division remainder goes to the pool, so both shares always
add up to the total supply exactly.
"""
from typing import List, NamedTuple

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory.errors import TooMuchSupplyShareRequestedError
from mcp_token_factory.schemas import MintDestination

logger = get_logger(__name__)


class Allocation(NamedTuple):
    pool_share: int
    caller_share: int


def allocate(total_supply: int, requested_percent: int, max_percent: int) -> Allocation:
    """
    Computes the (pool_share, caller_share) split of `total_supply`.

    Args:
        total_supply: Total units to mint.
        requested_percent: Percent of supply the caller asks for.
        max_percent: Factory policy maximum for requested_percent.

    Returns:
        Allocation with caller_share = floor(total_supply * requested_percent / 100)
        and pool_share holding the rest.

    Raises:
        TooMuchSupplyShareRequestedError: If requested_percent exceeds max_percent.
    """
    if requested_percent > max_percent:
        raise TooMuchSupplyShareRequestedError(
            f"Requested {requested_percent}% of supply, factory maximum is {max_percent}%"
        )

    caller_share = total_supply * requested_percent // 100
    pool_share = total_supply - caller_share
    logger.debug(f"Allocated supply {total_supply} at {requested_percent}%: pool={pool_share}, caller={caller_share}")
    return Allocation(pool_share=pool_share, caller_share=caller_share)


def mint_destinations(pool_owner: str, caller: str, allocation: Allocation) -> List[MintDestination]:
    """Ordered mint destinations, pool first. Zero shares produce no destination."""
    destinations = []
    if allocation.pool_share > 0:
        destinations.append(MintDestination(owner=pool_owner, amount=allocation.pool_share))
    if allocation.caller_share > 0:
        destinations.append(MintDestination(owner=caller, amount=allocation.caller_share))
    return destinations
