"""Single resolution point for the caller/callee decision."""
from __future__ import annotations

import logging

from .models import Role
from .signaling import SessionFull, SignalingChannel

logger = logging.getLogger(__name__)


class RoleResolver:
    """Decide whether this participant initiates or answers a session.

    A session without an offer and without a claimed caller slot makes the
    participant the caller; otherwise it joins as the callee. Claims are
    atomic on the channel, so two participants that both observe an empty
    record cannot both become the caller: the one that loses the claim
    resolves as callee and waits for the winner's offer.
    """

    def __init__(self, channel: SignalingChannel) -> None:
        self._channel = channel

    async def resolve(self, session_id: str) -> Role:
        record = await self._channel.read_record(session_id)
        if record.offer is None and not record.caller_claimed:
            if await self._channel.claim_role(session_id, Role.CALLER):
                logger.info("Session %s: resolved as caller", session_id)
                return Role.CALLER
            logger.info("Session %s: lost caller claim, joining as callee", session_id)
        if not await self._channel.claim_role(session_id, Role.CALLEE):
            raise SessionFull(session_id)
        logger.info("Session %s: resolved as callee", session_id)
        return Role.CALLEE


__all__ = ["RoleResolver"]
