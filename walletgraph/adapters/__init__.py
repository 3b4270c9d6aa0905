"""
Identity Provider Adapters

Each adapter wraps one external identity source behind
IdentityProvider.resolve_batch(wallets) -> {wallet: PartialIdentity}:
- ENSProvider: on-chain name-service records (primary name + text records)
- NeynarProvider: Farcaster accounts by verified address (fast batch tier)
- Web3BioProvider: aggregated profile links, one request per wallet (fallback tier)
"""
from walletgraph.adapters.base import IdentityProvider, ProviderOutcome, run_provider
from walletgraph.adapters.ens import ENSProvider, create_ens_provider
from walletgraph.adapters.neynar import NeynarProvider, create_neynar_provider
from walletgraph.adapters.web3bio import Web3BioProvider, create_web3bio_provider
from walletgraph.adapters.twitter import clean_twitter_handle, twitter_url

__all__ = [
    "IdentityProvider",
    "ProviderOutcome",
    "run_provider",
    "ENSProvider",
    "NeynarProvider",
    "Web3BioProvider",
    "create_ens_provider",
    "create_neynar_provider",
    "create_web3bio_provider",
    "clean_twitter_handle",
    "twitter_url",
]
