from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .base import VerificationResult


class AdNetwork(str, Enum):
    ADMOB = "admob"
    APPLOVIN = "applovin"
    IRONSOURCE = "ironsource"


@dataclass(frozen=True)
class AdRewardClaim:
    verification_id: str
    device_id: str
    ad_network: str
    ecpm_cents: Optional[int] = None


@dataclass(frozen=True)
class AdRewardEvent:
    verification_id: str
    device_id: str
    ad_network: AdNetwork
    hp_amount: int
    ecpm_cents: int
    revenue_cents: int

    def ledger_meta(self) -> Dict[str, Any]:
        return {
            "server_verification_id": self.verification_id,
            "device_id": self.device_id,
            "ad_network": self.ad_network.value,
            "ecpm_cents": self.ecpm_cents,
        }


class AdRewardVerifier:
    """
    Checks a server-to-server rewarded-video token.

    Tokens must carry the reward prefix and a minimum length, and come from
    a supported network. A valid token is worth a fixed HP amount; the
    reported eCPM (or a default) feeds ad revenue bookkeeping.
    """

    TOKEN_PREFIX = "reward_"
    MIN_TOKEN_LENGTH = 20

    def __init__(self, hp_amount: int = 5, default_ecpm_cents: int = 50) -> None:
        if hp_amount <= 0:
            raise ValueError("hp_amount must be positive")
        self._hp_amount = hp_amount
        self._default_ecpm_cents = default_ecpm_cents

    async def verify(self, claim: AdRewardClaim) -> VerificationResult[AdRewardEvent]:
        token = claim.verification_id or ""
        if not token.startswith(self.TOKEN_PREFIX) or len(token) < self.MIN_TOKEN_LENGTH:
            return VerificationResult.rejected("Invalid verification ID")
        if not claim.device_id:
            return VerificationResult.rejected("Missing device ID")
        try:
            network = AdNetwork(claim.ad_network)
        except ValueError:
            return VerificationResult.rejected(f"Unsupported ad network: {claim.ad_network}")
        if claim.ecpm_cents is not None and claim.ecpm_cents < 0:
            return VerificationResult.rejected("ecpm_cents must be non-negative")

        return VerificationResult.ok(
            AdRewardEvent(
                verification_id=token,
                device_id=claim.device_id,
                ad_network=network,
                hp_amount=self._hp_amount,
                ecpm_cents=claim.ecpm_cents or 0,
                revenue_cents=claim.ecpm_cents or self._default_ecpm_cents,
            )
        )
