"""
Token Factory Package Initialization

This package provides a factory-driven token deployment orchestrator built on the
Model Context Protocol (MCP). A factory derives the addresses of a token issuer and its
liquidity pool from the request itself, deploys both exactly once per request, and splits
the freshly minted supply between the pool and the requesting caller.

The package includes:
- Deterministic address derivation and supply allocation
- Value accounting that keeps the factory's reserve intact
- Pool, issuer and wallet logic hosted on an in-process sandbox network
- Admin-only upgrades of the factory code and the pool template
- Rate limiting and custom error handling
- MCP server implementation for easy integration
"""
