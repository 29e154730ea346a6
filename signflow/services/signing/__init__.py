from signflow.services.signing.state_machine import (
    decline,
    get_status,
    initiate_signing,
    redeem,
    reissue_token,
)

__all__ = [
    "initiate_signing",
    "redeem",
    "decline",
    "get_status",
    "reissue_token",
]
