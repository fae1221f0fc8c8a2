"""Pick and perform the approval strategy for one swap."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from chain.erc20 import AllowanceManager, TokenCapabilities
from chain.permit import PermitSigner
from core.base_types import MAX_UINT256, is_native_token
from core.concurrency import gather_settled
from core.results import Err, FailureCategory, Ok

logger = logging.getLogger(__name__)

PERMIT_TTL_SECONDS = 1800


class ApprovalKind(Enum):
    NOT_REQUIRED = auto()  # native token
    ALREADY_APPROVED = auto()
    PERMIT = auto()  # signed EIP-2612 payload rides along with the swap
    APPROVAL_SENT = auto()  # on-chain approve() submitted
    FAILED = auto()


@dataclass(frozen=True)
class ApprovalOutcome:
    kind: ApprovalKind
    permit: Optional[str] = None
    deadline: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    category: FailureCategory = FailureCategory.UNKNOWN


class ApprovalStep:
    """
    Approval and permit are mutually exclusive for one swap.

    Order: native tokens skip; a sufficient allowance skips; a token with
    EIP-2612 support gets a permit; anything else gets an unlimited
    ``approve``. A failed permit falls back to ``approve``.
    """

    def __init__(
        self,
        allowance: AllowanceManager,
        capabilities: TokenCapabilities,
        permits: PermitSigner,
        clock: Callable[[], float] = time.time,
    ):
        self._allowance = allowance
        self._capabilities = capabilities
        self._permits = permits
        self._clock = clock

    async def run(
        self, token: str, owner: str, spender: str, amount: int, chain_id: int
    ) -> ApprovalOutcome:
        if is_native_token(token):
            return ApprovalOutcome(ApprovalKind.NOT_REQUIRED)

        reads = await gather_settled(
            {
                "allowance": self._allowance.get_allowance(token, owner, spender, chain_id),
                "permit": self._capabilities.supports_permit(token, chain_id),
            },
            defaults={"permit": False},
        )
        allowance = reads.values.get("allowance")
        supports_permit = bool(reads.values.get("permit"))

        if isinstance(allowance, Ok) and allowance.value >= amount:
            return ApprovalOutcome(ApprovalKind.ALREADY_APPROVED)

        if supports_permit:
            deadline = int(self._clock()) + PERMIT_TTL_SECONDS
            signed = await self._permits.sign_permit(
                token, owner, spender, amount, deadline, chain_id
            )
            if isinstance(signed, Ok):
                return ApprovalOutcome(ApprovalKind.PERMIT, permit=signed.value, deadline=deadline)
            logger.warning("permit failed for %s, falling back to approve: %s", token, signed.message)

        if isinstance(allowance, Err):
            return ApprovalOutcome(
                ApprovalKind.FAILED, error=allowance.message, category=allowance.category
            )
        if allowance is None:
            return ApprovalOutcome(
                ApprovalKind.FAILED,
                error=f"Failed to check allowance: {reads.error_note()}",
                category=FailureCategory.UNKNOWN,
            )

        sent = await self._allowance.approve(token, spender, MAX_UINT256, chain_id, owner)
        if isinstance(sent, Err):
            return ApprovalOutcome(ApprovalKind.FAILED, error=sent.message, category=sent.category)
        return ApprovalOutcome(ApprovalKind.APPROVAL_SENT, tx_hash=sent.value)
