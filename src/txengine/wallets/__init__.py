"""Backend wallet provisioning."""

from txengine.wallets.provisioning import create_backend_wallet, list_backend_wallets

__all__ = ["create_backend_wallet", "list_backend_wallets"]
