import asyncio, logging
from typing import Callable, List, Optional, Set

from .client import ApiError, BackendApi
from .i18n import I18n
from .schemas import ReadBy, SenderType, Ticket, TicketMessage, utcnow

log = logging.getLogger("supportdesk.tickets")

class TicketView:
    """UI hooks; the default does nothing."""
    def render(self, board: "TicketBoard"):
        pass

    def scroll_to_bottom(self):
        pass

    def toast_error(self, text: str):
        pass

    def toast_success(self, text: str):
        pass


def _later(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)

def _unabsorbed(pending: List[TicketMessage], fresh: List[TicketMessage]) -> List[TicketMessage]:
    # each message new to this server copy stands in for one provisional with the same text
    unmatched = [(m.sender_type, m.message) for m in fresh]
    keep = []
    for p in pending:
        key = (p.sender_type, p.message)
        if key in unmatched:
            unmatched.remove(key)
        else:
            keep.append(p)
    return keep


def overlay(local: Optional[Ticket], server: Ticket) -> Ticket:
    """
    Shallow merge of a server copy over the local one, so a poll never takes
    visible state backwards:
    - a copy holding fewer messages than already shown is older; its message list is ignored
    - provisional messages stay until the server copy carries them
    - read marks newer than the server's are kept
    """
    if local is None or local.id != server.id:
        return server
    shown = local.server_messages()
    if len(server.messages) < len(shown):
        messages = shown
        pending = local.provisional_messages()
    else:
        messages = list(server.messages)
        seen = {m.id for m in shown}
        pending = _unabsorbed(local.provisional_messages(), [m for m in messages if m.id not in seen])
    read_by = ReadBy(
        user=_later(local.read_by.user, server.read_by.user),
        admin=_later(local.read_by.admin, server.read_by.admin),
    )
    return server.model_copy(update={"messages": messages + pending, "read_by": read_by})


class TicketBoard:
    """Client replica of the ticket list plus the ticket open in the detail view."""
    def __init__(self, view: Optional[TicketView] = None):
        self.view = view or TicketView()
        self.tickets: List[Ticket] = []
        self.selected: Optional[Ticket] = None
        self.draft = ""
        self.loading = False
        self.sending = False

    @property
    def selected_id(self) -> Optional[int]:
        return self.selected.id if self.selected else None

    def get(self, ticket_id: int) -> Optional[Ticket]:
        if self.selected and self.selected.id == ticket_id:
            return self.selected
        for t in self.tickets:
            if t.id == ticket_id:
                return t
        return None

    def _index(self, ticket_id: int) -> Optional[int]:
        for i, t in enumerate(self.tickets):
            if t.id == ticket_id:
                return i
        return None

    # ----- reconciliation -----
    def set_tickets(self, fresh: List[Ticket]):
        old = {t.id: t for t in self.tickets}
        self.tickets = [overlay(old.get(t.id), t) for t in fresh]
        if self.selected:
            for t in fresh:
                if t.id == self.selected.id:
                    self.selected = overlay(self.selected, t)
                    break
        self.view.render(self)

    def upsert(self, ticket: Ticket):
        idx = self._index(ticket.id)
        if idx is None:
            self.tickets.append(ticket)
        else:
            self.tickets[idx] = overlay(self.tickets[idx], ticket)
        if self.selected and self.selected.id == ticket.id:
            self.selected = overlay(self.selected, ticket)
        self.view.render(self)

    def merge_selected(self, ticket: Ticket) -> bool:
        if not self.selected or self.selected.id != ticket.id:
            return False
        self.selected = overlay(self.selected, ticket)
        idx = self._index(ticket.id)
        if idx is not None:
            self.tickets[idx] = overlay(self.tickets[idx], ticket)
        self.view.render(self)
        return True

    # ----- selection -----
    def select(self, ticket_id: int) -> Optional[Ticket]:
        ticket = self.get(ticket_id)
        if ticket is None:
            return None
        self.selected = ticket
        self.view.render(self)
        return ticket

    def deselect(self):
        self.selected = None
        self.view.render(self)

    # ----- local edits -----
    def _edit(self, ticket_id: int, fn: Callable[[Ticket], Ticket]):
        if self.selected and self.selected.id == ticket_id:
            self.selected = fn(self.selected)
        idx = self._index(ticket_id)
        if idx is not None:
            self.tickets[idx] = fn(self.tickets[idx])
        self.view.render(self)

    def add_message(self, ticket_id: int, msg: TicketMessage):
        self._edit(ticket_id, lambda t: t.model_copy(update={"messages": list(t.messages) + [msg]}))

    def remove_message(self, ticket_id: int, message_id: str):
        self._edit(ticket_id, lambda t: t.model_copy(
            update={"messages": [m for m in t.messages if m.id != message_id]}))

    def replace_messages(self, server: Ticket, drop_id: str):
        """Adopt the server's message list; other replies still in flight stay visible."""
        def apply(t: Ticket) -> Ticket:
            keep = [m for m in t.provisional_messages() if m.id != drop_id]
            merged = overlay(t, server)
            return merged.model_copy(update={"messages": list(server.messages) + keep})
        if self._index(server.id) is None:
            self.tickets.append(server)
        self._edit(server.id, apply)

    def mark_read_locally(self, ticket_id: int, side: SenderType, when):
        self._edit(ticket_id, lambda t: t.model_copy(update={"read_by": t.read_by.marked(side, when)}))


class UnreadTracker:
    """
    Unread = counterpart messages newer than our read mark; with no mark,
    every counterpart message counts.
    """
    def __init__(self, board: TicketBoard, api: BackendApi, viewer: SenderType = SenderType.USER):
        self.board = board
        self.api = api
        self.viewer = viewer
        self._tasks: Set[asyncio.Task] = set()

    def unread_count(self, ticket: Ticket) -> int:
        counterpart = self.viewer.counterpart
        last_read = ticket.read_by.of(self.viewer)
        return sum(
            1 for m in ticket.messages
            if m.sender_type is counterpart and (last_read is None or m.created_at > last_read)
        )

    def total_unread(self) -> int:
        return sum(self.unread_count(t) for t in self.board.tickets)

    def mark_read(self, ticket_id: int) -> asyncio.Task:
        self.board.mark_read_locally(ticket_id, self.viewer, utcnow())
        task = asyncio.get_running_loop().create_task(self._send_mark_read(ticket_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send_mark_read(self, ticket_id: int):
        # fire-and-forget, not retried
        try:
            await asyncio.to_thread(self.api.mark_read, ticket_id)
        except ApiError as e:
            log.warning("failed to mark ticket %s as read: %s", ticket_id, e)


class OptimisticReplyController:
    def __init__(self, board: TicketBoard, api: BackendApi, tr: Optional[I18n] = None):
        self.board = board
        self.api = api
        self.i18n = tr or I18n()

    async def reply(self, ticket_id: int, text: Optional[str] = None) -> bool:
        tr = self.i18n.t
        message = (self.board.draft if text is None else text).strip()
        if not message:
            return False
        self.board.draft = ""
        pending = TicketMessage.provisional(message, tr("ticket.you"))
        self.board.add_message(ticket_id, pending)
        self.board.sending = True
        try:
            ticket = await asyncio.to_thread(self.api.reply, ticket_id, message)
        except Exception as e:
            if isinstance(e, ApiError):
                log.warning("reply to ticket %s failed: %s", ticket_id, e)
                reason = e.message
            else:
                log.exception("reply to ticket %s crashed", ticket_id)
                reason = ""
            self.board.remove_message(ticket_id, pending.id)
            self.board.draft = message
            self.board.view.toast_error(reason or tr("ticket.reply_failed"))
            return False
        finally:
            self.board.sending = False
        self.board.replace_messages(ticket, pending.id)
        self.board.view.scroll_to_bottom()
        return True

    async def create_ticket(self, message: str, subject: Optional[str] = None) -> Optional[Ticket]:
        tr = self.i18n.t
        message = (message or "").strip()
        if not message:
            self.board.view.toast_error(tr("ticket.enter_message"))
            return None
        subject = (subject or "").strip() or tr("ticket.default_subject")
        self.board.sending = True
        try:
            ticket = await asyncio.to_thread(self.api.create_ticket, message, subject)
        except ApiError as e:
            log.warning("creating ticket failed: %s", e)
            self.board.view.toast_error(e.message or tr("ticket.create_failed"))
            return None
        finally:
            self.board.sending = False
        self.board.upsert(ticket)
        self.board.view.toast_success(tr("ticket.created"))
        return ticket
