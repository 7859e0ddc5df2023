import itertools
import threading
from datetime import datetime, timedelta, timezone

import pytest

from supportdesk.client import ApiError
from supportdesk.polling import Notifier
from supportdesk.schemas import Ticket
from supportdesk.security import ConversationCipher, KeyManager
from supportdesk.storage import MemoryStorage
from supportdesk.tickets import TicketView

BASE = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

def at(minutes: int) -> str:
    return (BASE + timedelta(minutes=minutes)).isoformat()

_ids = itertools.count(100)

def wire_message(sender: str, minutes: int, text: str = "hi", id_=None) -> dict:
    return {
        "id": str(id_ if id_ is not None else next(_ids)),
        "senderId": 7 if sender == "user" else 1,
        "senderType": sender,
        "senderName": "Alice" if sender == "user" else "Support",
        "message": text,
        "createdAt": at(minutes),
    }

def wire_ticket(id_: int, messages=(), read_user=None, read_admin=None, subject="Billing") -> dict:
    read_by = {}
    if read_user is not None:
        read_by["user"] = at(read_user)
    if read_admin is not None:
        read_by["admin"] = at(read_admin)
    return {
        "id": id_,
        "subject": subject,
        "status": "open",
        "messages": list(messages),
        "readBy": read_by,
        "createdAt": at(0),
        "updatedAt": at(0),
    }

def make_ticket(*args, **kwargs) -> Ticket:
    return Ticket.model_validate(wire_ticket(*args, **kwargs))


class FakeApi:
    """In-memory stand-in for BackendApi; the server side of every test."""
    def __init__(self):
        self.tickets = {}
        self.calls = []
        self.fail = set()
        self.answer = "42"
        self._lock = threading.Lock()

    def _check(self, name):
        with self._lock:
            self.calls.append(name)
        if name in self.fail:
            raise ApiError(f"{name} unavailable", status=503)

    def put(self, wire: dict):
        self.tickets[wire["id"]] = wire

    def add_message(self, ticket_id: int, sender: str, minutes: int, text: str = "new"):
        self.tickets[ticket_id]["messages"].append(wire_message(sender, minutes, text))

    def chat(self, question, file_id=None):
        self._check("chat")
        self.last_chat = (question, file_id)
        return self.answer

    def list_tickets(self):
        self._check("list")
        return [Ticket.model_validate(t) for t in self.tickets.values()]

    def get_ticket(self, ticket_id):
        self._check("get")
        return Ticket.model_validate(self.tickets[ticket_id])

    def reply(self, ticket_id, message):
        self._check("reply")
        self.add_message(ticket_id, "user", 500, message)
        return Ticket.model_validate(self.tickets[ticket_id])

    def create_ticket(self, message, subject=None):
        self._check("create")
        new_id = max(self.tickets, default=0) + 1
        self.put(wire_ticket(new_id, [wire_message("user", 1, message)], subject=subject or ""))
        return Ticket.model_validate(self.tickets[new_id])

    def mark_read(self, ticket_id):
        self._check("mark_read")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.alerts = []

    def notify(self, ticket, message):
        self.alerts.append((ticket.id, message.id))


class RecordingView(TicketView):
    def __init__(self):
        self.errors = []
        self.successes = []
        self.scrolls = 0
        self.renders = 0

    def render(self, board):
        self.renders += 1

    def scroll_to_bottom(self):
        self.scrolls += 1

    def toast_error(self, text):
        self.errors.append(text)

    def toast_success(self, text):
        self.successes.append(text)


@pytest.fixture
def storage():
    return MemoryStorage()

@pytest.fixture
def cipher(storage):
    return ConversationCipher(KeyManager(storage))

@pytest.fixture
def api():
    return FakeApi()

@pytest.fixture
def view():
    return RecordingView()

@pytest.fixture
def notifier():
    return RecordingNotifier()
