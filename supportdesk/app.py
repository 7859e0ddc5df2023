import logging
from typing import Optional

from .chat import ChatSessionController, LocalConversationStore
from .client import BackendApi, HttpClient
from .config import load_config
from .i18n import I18n
from .panel import SupportPanel
from .polling import BellNotifier, NotificationGate, Notifier, PollCursors, TicketPoller
from .schemas import SenderType
from .security import ConversationCipher, KeyManager
from .storage import FileStorage, LocalStorage
from .tickets import OptimisticReplyController, TicketBoard, TicketView, UnreadTracker

log = logging.getLogger("supportdesk.app")

class SupportDeskApp:
    """Builds the chat session and the support panel from one config dict."""
    def __init__(self, cfg: Optional[dict] = None, *, storage: Optional[LocalStorage] = None,
                 api: Optional[BackendApi] = None, view: Optional[TicketView] = None,
                 notifier: Optional[Notifier] = None):
        self.cfg = cfg if cfg is not None else load_config()
        self.i18n = I18n(default_lang=self.cfg.get("language", "en"))
        self.viewer = SenderType(self.cfg.get("viewer", "user"))

        self.storage = storage or FileStorage(self.cfg["storage_file"])
        self.keys = KeyManager(self.storage)
        self.cipher = ConversationCipher(self.keys)

        if api is None:
            http = HttpClient(self.cfg["api_base_url"], self.cfg.get("proxy_url", ""),
                              timeout=float(self.cfg.get("request_timeout", 20.0)))
            api = BackendApi(http, chat_timeout=float(self.cfg.get("chat_timeout", 60.0)))
        self.api = api

        # assistant chat
        self.history = LocalConversationStore(str(self.cfg.get("user_id", "anon")), self.storage, self.cipher)
        self.chat = ChatSessionController(self.history, self.api, self.i18n)

        # support tickets
        self.board = TicketBoard(view)
        self.cursors = PollCursors()
        self.gate = NotificationGate(self.cursors, notifier or BellNotifier(), self.viewer)
        self.poller = TicketPoller(
            self.api, self.board, self.gate,
            detail_interval=float(self.cfg.get("detail_poll_interval", 3.0)),
            list_interval=float(self.cfg.get("list_poll_interval", 5.0)),
        )
        self.unread = UnreadTracker(self.board, self.api, self.viewer)
        self.replies = OptimisticReplyController(self.board, self.api, self.i18n)
        self.panel = SupportPanel(self.api, self.board, self.gate, self.poller,
                                  self.unread, self.replies, self.i18n)

    async def start(self):
        await self.history.load()
        await self.panel.mount()
        log.info("supportdesk started for user %s", self.history.user_id)

    async def close(self):
        self.panel.mounted = False
        await self.poller.aclose()
        await self.chat.wait_idle()
        self.chat.close()
        await self.history.flush()
