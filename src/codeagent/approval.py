"""Human approval gate for mutating tool calls."""

from typing import Dict, List, Optional

from .channel import UIChannel
from .logger import get_logger, truncate

log = get_logger("approval")


class ApprovalGate:
    """Suspends a tool until the user accepts or rejects it.

    Requests travel over the UI channel as
    ``{"type": "approval", "id", "title", "details", "approveLabel", "cancelLabel"}``
    and are settled by an inbound ``approvalResponse``. ``cancel_all`` (used
    by stop) rejects everything outstanding. A rejection is a normal
    ``False`` result, never an exception.
    """

    def __init__(self, channel: UIChannel, auto_approve: bool = False):
        self.channel = channel
        self.auto_approve = auto_approve
        self._open: Dict[str, dict] = {}

    @property
    def pending(self) -> List[dict]:
        return list(self._open.values())

    async def request_approval(
        self,
        title: str,
        details: Optional[List[str]] = None,
        approve_label: str = "Approve",
        cancel_label: str = "Cancel",
    ) -> bool:
        details = list(details or [])
        if self.auto_approve:
            log.info("Auto-approved: %s %s", title, truncate(" | ".join(details), 200))
            return True

        request_id = self.channel.new_id("approval")
        message = {
            "type": "approval",
            "id": request_id,
            "title": title or "Approve action",
            "details": details,
            "approveLabel": approve_label or "Approve",
            "cancelLabel": cancel_label or "Cancel",
        }
        self._open[request_id] = message
        log.info("Approval requested %s: %s", request_id, title)
        try:
            approved = bool(await self.channel.request(message))
        finally:
            self._open.pop(request_id, None)
        log.info("Approval %s %s", request_id, "granted" if approved else "rejected")
        return approved

    def resolve(self, request_id: str, approved: bool) -> bool:
        return self.channel.resolve(request_id, bool(approved))

    def cancel_all(self) -> int:
        count = 0
        for request_id in list(self._open):
            if self.channel.resolve(request_id, False):
                count += 1
        if count:
            log.info("Rejected %d outstanding approval(s)", count)
        return count
