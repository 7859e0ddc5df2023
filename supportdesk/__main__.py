"""
Headless console session:
  /tickets            list tickets with unread counts
  /open <id>          open a ticket (starts the detail poll, marks it read)
  /close              close the open ticket
  /reply <text>       reply on the open ticket
  /new <subject> | <message>
  /ask <question>     ask the assistant
  /history            print the local assistant conversation
  /quit
"""
import asyncio, logging, sys

from .app import SupportDeskApp
from .config import load_config
from .i18n import I18n
from .markup import to_plain_text
from .tickets import TicketView

class ConsoleView(TicketView):
    def __init__(self, out=None, tr=None):
        self.out = out or sys.stdout
        self.i18n = tr or I18n()
        self._shown = set()

    def render(self, board):
        ticket = board.selected
        if ticket is None:
            return
        for m in ticket.server_messages():
            if m.id in self._shown:
                continue
            self._shown.add(m.id)
            self.out.write(self.i18n.t("console.new_message", id=ticket.id, subject=ticket.subject,
                                       sender=m.sender_name or m.sender_type.value, text=m.message) + "\n")

    def toast_error(self, text):
        self.out.write(f"! {text}\n")

    def toast_success(self, text):
        self.out.write(f"✓ {text}\n")

async def _handle(app: SupportDeskApp, line: str) -> bool:
    cmd, _, arg = line.strip().partition(" ")
    out = sys.stdout
    if cmd == "/quit":
        return False
    if cmd == "/tickets":
        for t in app.board.tickets:
            badge = app.i18n.t("console.unread", count=app.unread.unread_count(t))
            out.write(f"#{t.id} [{t.status}] {t.subject} ({badge})\n")
    elif cmd == "/open" and arg.strip().isdigit():
        if app.panel.select(int(arg)) is None:
            out.write(f"! no ticket #{arg}\n")
    elif cmd == "/close":
        app.panel.deselect()
    elif cmd == "/reply":
        await app.panel.reply(arg)
    elif cmd == "/new":
        subject, sep, message = arg.partition("|")
        if not sep:
            subject, message = "", subject
        await app.panel.create_ticket(message, subject)
    elif cmd == "/ask":
        task = app.chat.send(arg)
        if task is not None:
            await task
            out.write(to_plain_text(app.chat.messages[-1].content) + "\n")
    elif cmd == "/history":
        out.write(app.chat.export_text() or "(empty)\n")
    elif line.strip():
        out.write(__doc__)
    return True

async def _run(cfg: dict):
    app = SupportDeskApp(cfg, view=ConsoleView(tr=I18n(cfg.get("language", "en"))))
    await app.start()
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            if not await _handle(app, line):
                break
    finally:
        await app.close()

def main():
    cfg = load_config()
    logging.basicConfig(
        level=str(cfg.get("log_level", "warning")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_run(cfg))
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    main()
