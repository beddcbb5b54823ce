"""
auth/provider.py -- IdentityProvider interface consumed by the coordinator.

The coordinator does not know which backend verifies credentials. It needs
a capability to "verify credentials and return a subject identity or a
typed failure". In Python that is an async method that returns a
SubjectIdentity or raises ProviderError.

Implementations in this repo:
  auth.local.LocalIdentityProvider -- SQLite users, bcrypt, phone OTP,
                                      optional federated verifier.
Tests use AsyncMock doubles that satisfy the same protocol.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from auth.errors import ProviderError
from core.models import Credential, SubjectIdentity

__all__ = ["IdentityProvider", "ProviderError"]


@runtime_checkable
class IdentityProvider(Protocol):
    async def verify(self, credential: Credential) -> SubjectIdentity:
        """Verify an EmailPassword, OtpCode or FederatedToken credential."""
        ...

    async def register(self, name: str, email: str, password: str) -> SubjectIdentity:
        """Create an account and return its identity (signed in)."""
        ...

    async def request_otp(self, phone: str) -> str:
        """Send a one-time code to phone; return the challenge id."""
        ...

    async def sign_out(self) -> None:
        """End the provider-side session. Failures raise ProviderError."""
        ...
