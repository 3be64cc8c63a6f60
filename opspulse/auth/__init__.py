"""OAuth flows and access token lifecycle for vendor connections."""

from .oauth import OAuthService
from .providers import PROVIDERS, OAuthProvider, OAuthTokenClient, TokenGrant, get_provider
from .token_refresher import TokenRefresher

__all__ = [
    "OAuthProvider",
    "OAuthService",
    "OAuthTokenClient",
    "PROVIDERS",
    "TokenGrant",
    "TokenRefresher",
    "get_provider",
]
