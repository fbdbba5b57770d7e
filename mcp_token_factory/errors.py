"""
Custom Exception Classes for the Token Factory

This module defines the exceptions raised by factory, pool and issuer handlers
and by the sandbox network that delivers messages between them.

Exception Categories:
- Authorization Errors: caller is not the configured admin or owning factory
- Policy Errors: requested supply share exceeds the factory maximum
- Value Errors: attached value does not cover deployment, or a sender is broke
- Replay Errors: a pool receives a second initialization
- Request Errors: malformed numeric fields, unknown operations or getters

Every handler-level exception derives from FactoryError and carries a numeric
exit code. The network records that code on the failed transaction and bounces
the attached value back to the sender, so callers inspect traces the same way
they would inspect on-chain results.

Usage:
    Handlers raise these exceptions; only the network catches them generically.
    The factory catches AlreadyInitiatedError from a pool and nothing else.
"""


class FactoryError(Exception):
    """Base class for errors raised while an entity handles a message."""

    exit_code: int = 1


class UnauthorizedError(FactoryError):
    """Raised when the sender lacks the identity required for an operation."""

    exit_code = 73


class PolicyViolationError(FactoryError):
    """Raised when a request breaks a factory policy limit."""

    exit_code = 80


class TooMuchSupplyShareRequestedError(PolicyViolationError):
    """Raised when the requested deployer supply percent exceeds the configured maximum."""

    exit_code = 81


class NotEnoughValueToInitiateError(FactoryError):
    """Raised when the attached value cannot cover the multi-entity deployment."""

    exit_code = 82


class AlreadyInitiatedError(FactoryError):
    """Raised by a pool that has already been initiated."""

    exit_code = 90


class MalformedRequestError(FactoryError):
    """Raised when request fields are out of range (e.g. negative supply)."""

    exit_code = 83


class InsufficientBalanceError(FactoryError):
    """Raised when an entity tries to send more value than it holds."""

    exit_code = 37


class UnknownOperationError(FactoryError):
    """Raised when an entity receives an operation it does not handle."""

    exit_code = 0xFFFF


class UnknownGetMethodError(FactoryError):
    """Raised when a getter is not provided by the entity's logic or code."""

    exit_code = 11


class EntityNotFoundError(FactoryError):
    """Raised when a message targets an address with no deployed entity and no state init."""

    exit_code = 404


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""


class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for API requests."""
