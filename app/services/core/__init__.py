"""
Core services: everything that talks to the Twizzit API or guards its secrets.

- credential_vault: Encrypted credential storage (AES-256-GCM)
- token_manager: Bearer token cache and login
- twizzit_client: Resilient API client (organization fallback, pagination, retry)
"""
from app.services.core.credential_vault import CredentialVault, DecryptedCredential
from app.services.core.token_manager import TokenCache, TokenManager, get_default_token_cache
from app.services.core.twizzit_client import (
    ProbeResult,
    TwizzitClient,
    call_with_retry,
    normalize_params,
    probe_organizations,
)

__all__ = [
    "CredentialVault",
    "DecryptedCredential",
    "TokenCache",
    "TokenManager",
    "get_default_token_cache",
    "ProbeResult",
    "TwizzitClient",
    "call_with_retry",
    "normalize_params",
    "probe_organizations",
]
