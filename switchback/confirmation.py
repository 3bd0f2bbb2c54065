"""Pending tool confirmations keyed by request id."""

import asyncio
import uuid
from dataclasses import dataclass, field

from switchback.exceptions import ConfirmationError
from switchback.llm import ToolCall
from switchback.logging import get_logger

log = get_logger(__name__)


@dataclass
class ConfirmationRequest:
    id: str
    call: ToolCall
    future: asyncio.Future = field(repr=False)

    @property
    def resolved(self) -> bool:
        return self.future.done()


class ConfirmationBroker:
    """Hands out single-resolution futures for tool approvals.

    The agent awaits ``wait(request)``; a UI answers with
    ``resolve(request_id, approved)``.
    """

    def __init__(self) -> None:
        self._pending: dict[str, ConfirmationRequest] = {}

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def request(self, call: ToolCall) -> ConfirmationRequest:
        loop = asyncio.get_running_loop()
        request = ConfirmationRequest(id=uuid.uuid4().hex[:12], call=call, future=loop.create_future())
        self._pending[request.id] = request
        log.debug("Confirmation requested", request_id=request.id, tool=call.name)
        return request

    def resolve(self, request_id: str, approved: bool) -> None:
        request = self._pending.pop(request_id, None)
        if request is None or request.future.done():
            raise ConfirmationError(request_id)
        request.future.set_result(bool(approved))
        log.debug("Confirmation resolved", request_id=request_id, approved=bool(approved))

    async def wait(self, request: ConfirmationRequest) -> bool:
        try:
            return await request.future
        finally:
            self._pending.pop(request.id, None)

    def cancel_all(self) -> None:
        for request in self._pending.values():
            if not request.future.done():
                request.future.cancel()
        self._pending.clear()
