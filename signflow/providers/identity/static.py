from __future__ import annotations

from signflow.providers.identity.base import SignerIdentity


class StaticIdentityDirectory:
    def __init__(self, identities: dict[str, SignerIdentity] | None = None) -> None:
        self._identities = dict(identities or {})

    def register(self, identity: SignerIdentity) -> None:
        self._identities[identity.signer_id] = identity

    async def get_signer(self, signer_id: str) -> SignerIdentity | None:
        # Unknown signers fall back to their id as display name.
        return self._identities.get(signer_id) or SignerIdentity(signer_id=signer_id, display_name=signer_id)
