import asyncio, logging, sys
from typing import Dict, Optional

from .client import ApiError, BackendApi
from .schemas import SenderType, Ticket, TicketMessage
from .tickets import TicketBoard

log = logging.getLogger("supportdesk.poller")

# ===== alerts =====
class Notifier:
    def notify(self, ticket: Ticket, message: TicketMessage):
        raise NotImplementedError

class BellNotifier(Notifier):
    """Terminal bell."""
    def __init__(self, stream=None):
        self.stream = stream or sys.stdout

    def notify(self, ticket, message):
        self.stream.write("\a")
        self.stream.flush()

class PollCursors:
    """Last observed message count per ticket. Values only ever go up."""
    def __init__(self):
        self._counts: Dict[int, int] = {}

    def get(self, ticket_id: int) -> Optional[int]:
        return self._counts.get(ticket_id)

    def setdefault(self, ticket_id: int, count: int) -> int:
        return self._counts.setdefault(ticket_id, count)

    def advance(self, ticket_id: int, count: int) -> bool:
        current = self._counts.get(ticket_id)
        if current is not None and count <= current:
            return False
        self._counts[ticket_id] = count
        return True

    def __contains__(self, ticket_id):
        return ticket_id in self._counts

class NotificationGate:
    """
    Sole writer of the poll cursors. Compares absolute counts, so the two
    pollers can interleave in any order and a message alerts at most once.
    """
    def __init__(self, cursors: PollCursors, notifier: Notifier, viewer: SenderType = SenderType.USER):
        self.cursors = cursors
        self.notifier = notifier
        self.viewer = viewer
        # newest alerted message id per ticket
        self._alerted: Dict[int, str] = {}

    def seed(self, ticket: Ticket):
        self.cursors.setdefault(ticket.id, len(ticket.server_messages()))

    def observe(self, ticket: Ticket) -> bool:
        """Record a server copy; True when it holds more messages than last seen."""
        count = len(ticket.server_messages())
        if ticket.id not in self.cursors:
            # first sighting: remember, do not alert
            self.cursors.advance(ticket.id, count)
            return False
        if not self.cursors.advance(ticket.id, count):
            return False
        newest = ticket.server_messages()[-1]
        if newest.sender_type is self.viewer.counterpart and self._alerted.get(ticket.id) != newest.id:
            self._alerted[ticket.id] = newest.id
            try:
                self.notifier.notify(ticket, newest)
            except Exception:
                log.exception("notification for ticket %s failed", ticket.id)
        return True

# ===== pollers =====
class TicketPoller:
    """
    Two interval loops on the running event loop:
      - list loop: always on, GET /messages
      - detail loop: only while a ticket is open, GET /messages/{id}
    Results that land after stop() or after the selection moved are ignored.
    """
    def __init__(self, api: BackendApi, board: TicketBoard, gate: NotificationGate,
                 detail_interval: float = 3.0, list_interval: float = 5.0):
        self.api = api
        self.board = board
        self.gate = gate
        self.detail_interval = float(detail_interval)
        self.list_interval = float(list_interval)
        self._closed = False
        self._list_stop: Optional[asyncio.Event] = None
        self._list_task: Optional[asyncio.Task] = None
        self._detail_stop: Optional[asyncio.Event] = None
        self._detail_task: Optional[asyncio.Task] = None
        self._watching: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._list_task is not None

    @property
    def watching(self) -> Optional[int]:
        return self._watching

    # ----- lifecycle -----
    def start(self):
        if self.running:
            return
        self._closed = False
        self._list_stop = asyncio.Event()
        self._list_task = asyncio.get_running_loop().create_task(
            self._every(self.list_interval, self._list_stop, self.poll_list_once))
        if self.board.selected_id is not None:
            self.watch(self.board.selected_id)

    def watch(self, ticket_id: int):
        self.unwatch()
        self._watching = ticket_id
        if not self.running:
            return
        self._detail_stop = asyncio.Event()
        self._detail_task = asyncio.get_running_loop().create_task(
            self._every(self.detail_interval, self._detail_stop, lambda: self.poll_detail_once(ticket_id)))

    def unwatch(self):
        self._watching = None
        if self._detail_stop is not None:
            self._detail_stop.set()
        self._detail_stop = None
        self._detail_task = None

    def stop(self):
        """Clear both timers; requests already in flight finish but are ignored."""
        self._closed = True
        tasks = [t for t in (self._list_task, self._detail_task) if t is not None]
        if self._list_stop is not None:
            self._list_stop.set()
        self.unwatch()
        self._list_stop = None
        self._list_task = None
        return tasks

    async def aclose(self):
        for task in self.stop():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _every(self, interval: float, stop_event: asyncio.Event, tick):
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await tick()
            except Exception:
                log.exception("poll tick crashed")

    # ----- ticks -----
    def _is_current(self, ticket_id: int) -> bool:
        return (not self._closed and self._watching == ticket_id
                and self.board.selected_id == ticket_id)

    async def poll_detail_once(self, ticket_id: int) -> bool:
        try:
            ticket = await asyncio.to_thread(self.api.get_ticket, ticket_id)
        except ApiError as e:
            log.warning("polling ticket %s failed: %s", ticket_id, e)
            return False
        if not self._is_current(ticket_id):
            log.debug("ticket %s no longer open, dropping poll result", ticket_id)
            return False
        grew = self.gate.observe(ticket)
        self.board.merge_selected(ticket)
        if grew:
            self.board.view.scroll_to_bottom()
        return True

    async def poll_list_once(self) -> bool:
        try:
            tickets = await asyncio.to_thread(self.api.list_tickets)
        except ApiError as e:
            log.warning("background ticket poll failed: %s", e)
            return False
        if self._closed:
            return False
        open_id = self._watching if self.board.selected_id == self._watching else None
        for ticket in tickets:
            # the detail loop reports on the open ticket
            if ticket.id == open_id:
                continue
            self.gate.observe(ticket)
        self.board.set_tickets(tickets)
        return True
