"""Crypto module initialization"""

from vendhub_fiscal.crypto.credential_vault import CredentialVault, VaultDefaults

__all__ = [
    "CredentialVault",
    "VaultDefaults",
]
