"""Provider interfaces for maasflow."""
from __future__ import annotations

from .maas import MaasAuthError, MaasClient, MaasError, NodeClient, parse_api_key

__all__ = [
    "MaasAuthError",
    "MaasClient",
    "MaasError",
    "NodeClient",
    "parse_api_key",
]
