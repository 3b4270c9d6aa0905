"""WalletGraph - wallet to social identity resolution."""

__version__ = "1.0.0"
