"""
Sandbox Network: Message-Passing Runtime for Factory Entities

This module provides the collaborators the factory relies on but does not implement itself:
account balances and value transfer, deployment of an entity on its first message, and
ordered delivery of messages between entities.

Execution Model:
- Every address has one mailbox, modelled as an asyncio.Lock held for the whole handler,
  including the messages that handler sends onward. An entity therefore never observes a
  second message before the first one is completely processed.
- Messages flow caller -> factory -> pool/issuer -> wallets, never backwards, so nested
  locks cannot cycle.
- Different addresses are independent; concurrent requests interleave only at await points.

Value Model:
- The sender of every message pays RELAY_FEE on top of the attached value; fees are burned.
- A message carrying a StateInit deploys the destination if nothing lives there yet and the
  StateInit derives to that address; otherwise the StateInit is ignored.
- If a handler raises a FactoryError its data and code are restored, the transaction is marked
  failed with the error's exit code, and the part of the attached value that is still unspent
  goes back to the sender minus the relay fee of the bounce.

Traces:
    send_external() collects every transaction caused by one external message into a Trace.
    Only external accounts may send one; an entity sending as itself would deadlock on its
    own mailbox.
    Collection uses a ContextVar, so traces of concurrent calls stay separate.
"""
import asyncio
import hashlib
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_token_factory import config
from mcp_token_factory.addressing import derive_state_init
from mcp_token_factory.entities import EntityLogic, IssuerLogic, PoolLogic, WalletLogic
from mcp_token_factory.errors import (
    EntityNotFoundError,
    FactoryError,
    InsufficientBalanceError,
    UnauthorizedError,
    UnknownGetMethodError,
)
from mcp_token_factory.factory import FactoryLogic
from mcp_token_factory.schemas import EntityCode, EntityRole, Message, Transaction

logger = get_logger(__name__)

_current_trace: ContextVar[Optional[List[Transaction]]] = ContextVar("current_trace", default=None)


class Account(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    address: Pubkey
    balance: int = 0
    code: Optional[EntityCode] = None  # None for external (caller) accounts
    data: Optional[BaseModel] = None


class Trace(BaseModel):
    """Transactions caused by one external message, in delivery order."""

    transactions: List[Transaction]

    def filter(self, **criteria: Any) -> List[Transaction]:
        return [
            tx for tx in self.transactions
            if all(getattr(tx, key) == value for key, value in criteria.items())
        ]

    def find(self, **criteria: Any) -> Optional[Transaction]:
        matches = self.filter(**criteria)
        return matches[0] if matches else None

    def has_transaction(self, **criteria: Any) -> bool:
        return self.find(**criteria) is not None

    @property
    def failed(self) -> List[Transaction]:
        return self.filter(success=False)


class Network:
    """In-process blockchain-like network hosting the factory and the entities it deploys."""

    def __init__(self) -> None:
        self.accounts: Dict[Pubkey, Account] = {}
        self.burned_fees = 0
        self._locks: Dict[Pubkey, asyncio.Lock] = {}
        self._logic: Dict[EntityRole, EntityLogic] = {
            EntityRole.factory: FactoryLogic(),
            EntityRole.issuer: IssuerLogic(),
            EntityRole.pool: PoolLogic(),
            EntityRole.wallet: WalletLogic(),
        }

    # --- Accounts ---

    def treasury(self, name: str, balance: Optional[int] = None) -> Pubkey:
        """Returns a funded external account whose keypair is derived from `name`."""
        address = Keypair.from_seed(hashlib.sha256(name.encode("utf-8")).digest()).pubkey()
        self.open_external(address, balance)
        return address

    def open_external(self, address: Pubkey, balance: Optional[int] = None) -> Account:
        """Creates an external account at `address` if none exists."""
        if address not in self.accounts:
            funded = config.TREASURY_BALANCE if balance is None else balance
            self.accounts[address] = Account(address=address, balance=funded)
            logger.debug(f"Opened external account {address} with balance {funded}")
        return self.accounts[address]

    def get_account(self, address: Pubkey) -> Account:
        account = self.accounts.get(address)
        if account is None:
            raise EntityNotFoundError(f"No account at {address}")
        return account

    def get_balance(self, address: Pubkey) -> int:
        account = self.accounts.get(address)
        return account.balance if account is not None else 0

    def burn(self, account: Account, amount: int) -> None:
        if account.balance < amount:
            raise InsufficientBalanceError(f"{account.address} cannot pay {amount}, balance {account.balance}")
        account.balance -= amount
        self.burned_fees += amount

    # --- Messaging ---

    async def send_external(self, message: Message) -> Trace:
        """Sends a message from outside the network and returns everything it caused."""
        sender = self.accounts.get(message.sender)
        if sender is not None and sender.code is not None:
            raise UnauthorizedError(
                f"{sender.code.role.value} at {message.sender} is an entity and cannot send external messages"
            )
        transactions: List[Transaction] = []
        token = _current_trace.set(transactions)
        try:
            await self.send(message)
        finally:
            _current_trace.reset(token)
        return Trace(transactions=transactions)

    async def send(self, message: Message) -> Transaction:
        """Charges the sender and delivers `message`. Used by entity handlers."""
        sender = self.get_account(message.sender)
        cost = message.value + config.RELAY_FEE
        if sender.balance < cost:
            raise InsufficientBalanceError(f"{sender.address} cannot send {message.value} plus fee, balance {sender.balance}")
        sender.balance -= cost
        self.burned_fees += config.RELAY_FEE
        return await self._deliver(message)

    async def _deliver(self, message: Message) -> Transaction:
        lock = self._locks.setdefault(message.destination, asyncio.Lock())
        async with lock:
            transaction = Transaction(
                sender=message.sender,
                destination=message.destination,
                op=message.op,
                value=message.value,
            )
            trace = _current_trace.get()
            if trace is not None:
                trace.append(transaction)

            account = self.accounts.get(message.destination)
            if account is None and message.state_init is not None:
                if derive_state_init(message.state_init) == message.destination:
                    account = Account(
                        address=message.destination,
                        code=message.state_init.code,
                        data=message.state_init.data.model_copy(deep=True),
                    )
                    self.accounts[message.destination] = account
                    transaction.deploy = True
                    logger.info(f"Deployed {account.code.role.value} at {account.address}")
                else:
                    logger.warning(f"State init for {message.destination} derives to a different address, ignored")

            if account is None:
                error = EntityNotFoundError(f"No entity at {message.destination} for op '{message.op.value}'")
                self._fail(transaction, error)
                self._bounce(message, transaction, message.value)
                return transaction

            balance_before = account.balance
            account.balance += message.value
            if account.code is None:
                return transaction

            code, data = account.code, account.data.model_copy(deep=True)
            logic = self._logic[account.code.role]
            try:
                await logic.receive(self, account, message)
            except FactoryError as e:
                account.code, account.data = code, data
                self._fail(transaction, e)
                if message.bounce:
                    # Only what is left of this message's value is returned.
                    refundable = max(0, min(message.value, account.balance - balance_before))
                    account.balance -= refundable
                    self._bounce(message, transaction, refundable)
            else:
                logger.debug(f"Delivered {message.op.value} from {message.sender} to {message.destination}")
            return transaction

    def _fail(self, transaction: Transaction, error: FactoryError) -> None:
        transaction.success = False
        transaction.exit_code = error.exit_code
        logger.warning(f"Transaction {transaction.op.value} {transaction.sender} -> {transaction.destination} "
                       f"failed with exit code {error.exit_code}: {error}")

    def _bounce(self, message: Message, transaction: Transaction, amount: int) -> None:
        if not message.bounce:
            self.burned_fees += amount
            return
        refund = amount - config.RELAY_FEE
        if refund > 0:
            self.accounts[message.sender].balance += refund
            self.burned_fees += config.RELAY_FEE
        else:
            self.burned_fees += amount
        transaction.bounced = True
        logger.debug(f"Bounced {max(refund, 0)} back to {message.sender}")

    # --- Getters ---

    def run_get_method(self, address: Pubkey, method: str, **kwargs: Any) -> Any:
        """Runs a read-only getter; constant getters declared by the code take precedence."""
        account = self.get_account(address)
        if account.code is None:
            raise UnknownGetMethodError(f"External account {address} has no getters")
        if method in account.code.getters:
            return account.code.getters[method]
        logic = self._logic[account.code.role]
        if method not in logic.get_methods:
            raise UnknownGetMethodError(f"{account.code.role.value} at {address} has no getter '{method}'")
        return logic.run_get_method(self, account, method, **kwargs)
