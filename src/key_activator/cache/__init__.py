"""TTL caches for identity tokens and proxy credentials."""

from .credentials import CredentialCache
from .tokens import TokenCache
from .ttl import TTLCache

__all__ = ["CredentialCache", "TTLCache", "TokenCache"]
