"""Chain RPC access."""

from txengine.chain.rpc import ChainClient, get_chain_client, reset_chain_clients

__all__ = ["ChainClient", "get_chain_client", "reset_chain_clients"]
