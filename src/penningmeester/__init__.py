"""
penningmeester: treasurer automation for student associations.

Pulls order data from Pretix and prepares it for Exact Online. This package
holds the OAuth2 authorization subsystem: the HTTPS callback server, the
shared token store and the AuthOnly / Normal execution modes.
"""

__version__ = "0.3.0"
