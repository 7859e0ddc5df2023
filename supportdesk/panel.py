import asyncio, logging
from typing import Optional

from .client import ApiError, BackendApi
from .i18n import I18n
from .polling import NotificationGate, TicketPoller
from .schemas import Ticket
from .tickets import OptimisticReplyController, TicketBoard, UnreadTracker

log = logging.getLogger("supportdesk.panel")

class SupportPanel:
    """
    The support-messages component: ticket list, open ticket, reply box.
    mount() loads and starts polling, unmount() tears the timers down.
    """
    def __init__(self, api: BackendApi, board: TicketBoard, gate: NotificationGate,
                 poller: TicketPoller, unread: UnreadTracker, replies: OptimisticReplyController,
                 tr: Optional[I18n] = None):
        self.api = api
        self.board = board
        self.gate = gate
        self.poller = poller
        self.unread = unread
        self.replies = replies
        self.i18n = tr or I18n()
        self.mounted = False

    async def mount(self):
        self.mounted = True
        await self.refresh(background=False)
        self.poller.start()

    def unmount(self):
        self.mounted = False
        self.poller.stop()

    async def refresh(self, background: bool = True) -> bool:
        if not background:
            self.board.loading = True
        try:
            tickets = await asyncio.to_thread(self.api.list_tickets)
        except ApiError as e:
            log.warning("loading tickets failed: %s", e)
            if not background:
                self.board.view.toast_error(e.message or self.i18n.t("ticket.load_failed"))
            return False
        finally:
            if not background:
                self.board.loading = False
        if not self.mounted:
            return False
        for t in tickets:
            self.gate.seed(t)
        self.board.set_tickets(tickets)
        # first load opens the first ticket
        if not background and self.board.selected is None and tickets:
            self.select(tickets[0].id)
        return True

    # ----- selection -----
    def select(self, ticket_id: int) -> Optional[Ticket]:
        ticket = self.board.select(ticket_id)
        if ticket is None:
            return None
        self.gate.seed(ticket)
        self.unread.mark_read(ticket_id)
        self.poller.watch(ticket_id)
        self.board.view.scroll_to_bottom()
        return ticket

    def deselect(self):
        self.poller.unwatch()
        self.board.deselect()

    # ----- actions -----
    async def reply(self, text: Optional[str] = None) -> bool:
        if self.board.selected_id is None:
            return False
        return await self.replies.reply(self.board.selected_id, text)

    async def create_ticket(self, message: str, subject: Optional[str] = None) -> Optional[Ticket]:
        ticket = await self.replies.create_ticket(message, subject)
        if ticket is not None and self.mounted:
            self.select(ticket.id)
        return ticket

    def unread_count(self, ticket_id: int) -> int:
        ticket = self.board.get(ticket_id)
        return self.unread.unread_count(ticket) if ticket else 0
