"""
penningmeester authentication and token management.

Provides the OAuth2 authorization-code flow with a local HTTPS callback
server, durable token storage and automatic refresh for Exact Online and
Pretix.
"""

from penningmeester.auth.manager import TokenManager
from penningmeester.auth.oauth2 import OAuth2Client, generate_pkce_pair
from penningmeester.auth.server import AuthorizationServer, AuthorizationSession, SessionStatus
from penningmeester.auth.token_store import TokenRecord, TokenStore

__all__ = [
    "AuthorizationServer",
    "AuthorizationSession",
    "OAuth2Client",
    "SessionStatus",
    "TokenManager",
    "TokenRecord",
    "TokenStore",
    "generate_pkce_pair",
]
