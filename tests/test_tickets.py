import asyncio

from supportdesk.schemas import SenderType, TicketMessage
from supportdesk.tickets import OptimisticReplyController, TicketBoard, UnreadTracker, overlay

from .conftest import make_ticket, wire_message, wire_ticket


def three_message_ticket(read_user=None):
    return make_ticket(1, [
        wire_message("admin", 1, "hello"),
        wire_message("user", 2, "hi"),
        wire_message("admin", 3, "how can we help?"),
    ], read_user=read_user)


# ----- unread -----
def test_unread_counts_counterpart_messages_after_read_mark(api, view):
    board = TicketBoard(view)
    board.set_tickets([three_message_ticket(read_user=2)])
    unread = UnreadTracker(board, api)
    assert unread.unread_count(board.get(1)) == 1

    async def go():
        await unread.mark_read(1)
    asyncio.run(go())
    assert unread.unread_count(board.get(1)) == 0
    assert api.calls == ["mark_read"]


def test_no_read_mark_counts_every_counterpart_message(api):
    board = TicketBoard()
    board.set_tickets([three_message_ticket(), make_ticket(2, [wire_message("admin", 1)])])
    unread = UnreadTracker(board, api)
    assert unread.unread_count(board.get(1)) == 2
    assert unread.total_unread() == 3

    admin_side = UnreadTracker(board, api, SenderType.ADMIN)
    assert admin_side.unread_count(board.get(1)) == 1


def test_mark_read_failure_keeps_local_mark(api):
    api.fail.add("mark_read")
    board = TicketBoard()
    board.set_tickets([three_message_ticket()])
    unread = UnreadTracker(board, api)

    async def go():
        await unread.mark_read(1)
    asyncio.run(go())
    assert unread.unread_count(board.get(1)) == 0


def test_polls_never_regress_the_local_read_mark(api):
    board = TicketBoard()
    board.set_tickets([three_message_ticket()])
    board.select(1)
    unread = UnreadTracker(board, api)

    async def go():
        await unread.mark_read(1)
    asyncio.run(go())

    # server copy has not caught up with the mark yet
    board.set_tickets([three_message_ticket(read_user=0)])
    board.merge_selected(three_message_ticket())
    assert unread.unread_count(board.get(1)) == 0
    assert unread.unread_count(board.tickets[0]) == 0


# ----- reconciliation -----
def test_overlay_keeps_provisional_messages():
    local = three_message_ticket()
    pending = TicketMessage.provisional("on its way", "You")
    local = local.model_copy(update={"messages": local.messages + [pending]})
    server = local.model_copy(update={"messages": local.server_messages() + [
        TicketMessage.model_validate(wire_message("admin", 4, "still there?"))]})
    merged = overlay(local, server)
    assert merged.messages[-1] is pending
    assert merged.server_messages() == server.messages
    assert overlay(None, server) is server
    assert overlay(make_ticket(2), server) is server


def test_overlay_ignores_older_message_list():
    local = three_message_ticket()
    older = make_ticket(1, [wire_message("admin", 1, "hello")], read_user=9)
    merged = overlay(local, older)
    assert [m.message for m in merged.messages] == ["hello", "hi", "how can we help?"]
    assert merged.read_by.user == older.read_by.user


def test_overlay_drops_provisional_once_server_has_it():
    local = make_ticket(1, [wire_message("admin", 1, "hello")])
    first = TicketMessage.provisional("my reply", "You")
    second = TicketMessage.provisional("my reply", "You")
    local = local.model_copy(update={"messages": local.messages + [first, second]})

    # the server has taken one of two identical replies
    server = make_ticket(1, [local.messages[0].model_dump(by_alias=True, mode="json"),
                             wire_message("user", 2, "my reply")])
    merged = overlay(local, server)
    assert [m.message for m in merged.messages] == ["hello", "my reply", "my reply"]
    assert merged.provisional_messages() == [second]

    # an admin message with the same text does not stand in for ours
    server = make_ticket(1, [local.messages[0].model_dump(by_alias=True, mode="json"),
                             wire_message("admin", 2, "my reply")])
    assert overlay(local, server).provisional_messages() == [first, second]


def test_set_tickets_refreshes_selection(view):
    board = TicketBoard(view)
    board.set_tickets([make_ticket(1), make_ticket(2)])
    board.select(2)
    board.set_tickets([make_ticket(1), make_ticket(2, [wire_message("admin", 1, "news")])])
    assert board.selected.message_count == 1
    assert view.renders >= 3
    assert board.select(99) is None


# ----- optimistic replies -----
def setup_reply(api, view):
    api.put(wire_ticket(1, [wire_message("admin", 1, "hello")]))
    board = TicketBoard(view)
    board.set_tickets(api.list_tickets())
    board.select(1)
    return board, OptimisticReplyController(board, api)


def test_reply_shows_provisional_then_server_list(api, view):
    board, replies = setup_reply(api, view)
    seen_during_request = []

    original = api.reply
    def spying_reply(ticket_id, message):
        seen_during_request.append([m.is_provisional for m in board.selected.messages])
        return original(ticket_id, message)
    api.reply = spying_reply

    board.draft = "  my answer  "
    ok = asyncio.run(replies.reply(1))
    assert ok
    assert seen_during_request == [[False, True]]
    assert board.draft == ""
    assert [m.message for m in board.selected.messages] == ["hello", "my answer"]
    assert not any(m.is_provisional for m in board.selected.messages)
    assert board.tickets[0].message_count == 2
    assert not board.sending
    assert view.scrolls == 1


def test_reply_failure_rolls_back(api, view):
    api.fail.add("reply")
    board, replies = setup_reply(api, view)
    ok = asyncio.run(replies.reply(1, "lost words"))
    assert not ok
    assert [m.message for m in board.selected.messages] == ["hello"]
    assert [m.message for m in board.tickets[0].messages] == ["hello"]
    assert board.draft == "lost words"
    assert view.errors == ["reply unavailable"]
    assert not board.sending


def test_blank_reply_is_ignored(api, view):
    board, replies = setup_reply(api, view)
    assert not asyncio.run(replies.reply(1, "   "))
    assert "reply" not in api.calls


def test_create_ticket(api, view):
    board = TicketBoard(view)
    replies = OptimisticReplyController(board, api)

    assert asyncio.run(replies.create_ticket("  ")) is None
    assert view.errors == ["Please enter a message"]

    ticket = asyncio.run(replies.create_ticket("printer is on fire"))
    assert ticket.subject == "Support Request"
    assert board.get(ticket.id) is not None
    assert view.successes == ["Message sent successfully"]

    api.fail.add("create")
    assert asyncio.run(replies.create_ticket("again", "Printer")) is None
    assert view.errors[-1] == "create unavailable"
