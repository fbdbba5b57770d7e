"""
Deterministic Address Derivation

An entity's address is a pure function of its template code and its initial data:
SHA-256 over a canonical JSON encoding of both, taken as a 32-byte solders Pubkey.
Two requests with the same code and data always land on the same address, which is
what lets the factory deploy idempotently without a registry.

The encoding sorts keys and fixes separators, so field order in the models never
affects the result.
"""
import hashlib
import json

from pydantic import BaseModel
from solders.pubkey import Pubkey

from mcp_token_factory.schemas import EntityCode, StateInit


def canonical_bytes(code: EntityCode, init_params: BaseModel) -> bytes:
    payload = {
        "code": code.model_dump(mode="json"),
        "data": init_params.model_dump(mode="json"),
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def derive(code: EntityCode, init_params: BaseModel) -> Pubkey:
    """Derives the address of the entity created from `code` with initial data `init_params`."""
    return Pubkey(hashlib.sha256(canonical_bytes(code, init_params)).digest())


def derive_state_init(state_init: StateInit) -> Pubkey:
    return derive(state_init.code, state_init.data)
