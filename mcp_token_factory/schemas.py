"""
Pydantic Data Models and Validation Schemas

This module defines the data models shared by the factory, the entities it deploys and the
sandbox network that carries messages between them.

Key Components:
- EntityRole / Op enums: the tagged variant of entity kinds and the operations they accept
- EntityCode: template code blob, the first input of address derivation
- FactoryConfig: the factory Configuration, replaced whole on upgrade
- TokenRequest: the per-call InitiateNew request
- PoolData / IssuerData / WalletData: persistent state of deployed entities
- Message bodies, Message, StateInit and Transaction: the wire level of the sandbox

Identities inside persisted data are base58 strings so that they serialize canonically;
the network itself addresses accounts by solders Pubkey.
"""
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from solders.pubkey import Pubkey


def _check_address(value: str) -> str:
    Pubkey.from_string(value)
    return value


Address = Annotated[str, AfterValidator(_check_address)]


class EntityRole(str, Enum):
    factory = "factory"
    issuer = "issuer"
    pool = "pool"
    wallet = "wallet"


class Op(str, Enum):
    deploy = "deploy"
    top_up = "top_up"
    initiate_new = "initiate_new"
    upgrade = "upgrade"
    pool_init = "pool_init"
    mint = "mint"
    internal_transfer = "internal_transfer"
    excess = "excess"


class InitiateOutcome(str, Enum):
    minted = "minted"
    already_initiated = "already_initiated"


class EntityCode(BaseModel):
    """Executable logic blueprint. The role selects the handler; getters extend it with constants."""
    model_config = ConfigDict(frozen=True)

    role: EntityRole
    revision: str = "1"
    getters: Dict[str, int] = {}


# --- Persistent state ---

class FactoryConfig(BaseModel):
    admin: Address
    issuer_code: EntityCode
    wallet_code: EntityCode
    pool_code: EntityCode
    fee_per_mille: int = Field(ge=0, le=1000)
    max_deployer_supply_percent: int = Field(ge=0, le=100)


class PoolData(BaseModel):
    factory: Address
    admin: Address
    metadata_uri: str
    initiated: bool = False
    issuer: Optional[Address] = None
    minimal_price: Optional[int] = None


class IssuerData(BaseModel):
    factory: Address
    pool: Address
    metadata_uri: str
    total_supply: int
    wallet_code: EntityCode
    fee_per_mille: int
    minted: int = 0


class WalletData(BaseModel):
    owner: Address
    issuer: Address
    fee_per_mille: int
    balance: int = 0


# --- Requests and message bodies ---

class TokenRequest(BaseModel):
    metadata_uri: str = Field(min_length=1)
    total_supply: int = Field(ge=0)
    deployer_supply_percent: int = Field(ge=0)
    minimal_price: int = Field(ge=0)


class UpgradeBody(BaseModel):
    new_factory_code: Optional[EntityCode] = None
    new_pool_code: Optional[EntityCode] = None


class PoolInitBody(BaseModel):
    issuer: Address
    minimal_price: int


class MintDestination(BaseModel):
    owner: Address
    amount: int = Field(gt=0)


class MintBody(BaseModel):
    destinations: List[MintDestination]


class InternalTransferBody(BaseModel):
    amount: int = Field(gt=0)


class ExcessBody(BaseModel):
    outcome: Optional[InitiateOutcome] = None


# --- Wire level ---

class StateInit(BaseModel):
    """Code plus initial data; the pair an address is derived from."""
    code: EntityCode
    data: BaseModel


class Message(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sender: Pubkey
    destination: Pubkey
    op: Op
    value: int = Field(default=0, ge=0)
    body: Optional[BaseModel] = None
    state_init: Optional[StateInit] = None
    bounce: bool = True


class Transaction(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sender: Pubkey
    destination: Pubkey
    op: Op
    value: int
    deploy: bool = False
    success: bool = True
    exit_code: int = 0
    bounced: bool = False
