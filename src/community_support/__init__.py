"""
Community support billing service.

Members back a community through a recurring support plan billed by an
external payment provider. The package keeps the local subscription record
consistent with the provider's:
- Subscription lifecycle engine (subscribe, cancel, provider events)
- Payment provider adapters (Stripe)
- Signed webhook ingestion with replay protection
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get service version."""
    return __version__
