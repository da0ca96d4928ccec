"""HTTP clients for the third-party image services.

Each client wraps one provider's documented HTTP contract with ``requests``
and raises :class:`ProviderError` when the provider fails, so the generation
pipeline can decide whether to fall back or abort.
"""

from postcards.core.clients.base import ProviderError
from postcards.core.clients.clipdrop import ClipdropClient
from postcards.core.clients.cloudinary import CloudinaryClient
from postcards.core.clients.fal import FalClient

__all__ = [
    "ClipdropClient",
    "CloudinaryClient",
    "FalClient",
    "ProviderError",
]
