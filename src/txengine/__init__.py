"""txengine: transaction queue and multi-backend signer service."""

__version__ = "0.1.0"
