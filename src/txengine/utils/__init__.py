"""Utility modules for txengine."""

from txengine.utils.locks import WalletNetworkLock, get_wallet_lock, wallet_lock

__all__ = ["WalletNetworkLock", "get_wallet_lock", "wallet_lock"]
