import asyncio, logging, time, uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .client import ApiError, BackendApi
from .i18n import I18n
from .markup import render_markdown, to_plain_text
from .schemas import Role
from .security import ConversationCipher
from .storage import LocalStorage

log = logging.getLogger("supportdesk.chat")

REACTIONS = ("up", "down")

def history_key(user_id: str) -> str:
    return f"chat_history_{user_id}"

def _now_ms() -> int:
    return int(time.time() * 1000)

# ===== models =====
class ConversationMessage:
    def __init__(self, id_: str, role: Role, content: str, created_at_ms: int,
                 original_text: Optional[str] = None, reaction: Optional[str] = None):
        self.id = id_
        self.role = role
        self.content = content
        self.created_at_ms = created_at_ms
        self.original_text = original_text
        self.reaction = reaction

    @staticmethod
    def user(text: str) -> "ConversationMessage":
        return ConversationMessage(str(uuid.uuid4()), Role.USER, render_markdown(text), _now_ms(), original_text=text)

    @staticmethod
    def assistant(text: str) -> "ConversationMessage":
        return ConversationMessage(str(uuid.uuid4()), Role.ASSISTANT, render_markdown(text), _now_ms())

    @property
    def text(self) -> str:
        return self.original_text if self.original_text is not None else to_plain_text(self.content)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id, "role": self.role.value,
            "content": self.content, "createdAtMs": self.created_at_ms,
        }
        if self.original_text is not None:
            d["originalText"] = self.original_text
        if self.reaction is not None:
            d["reaction"] = self.reaction
        return d

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ConversationMessage":
        reaction = d.get("reaction")
        return ConversationMessage(
            id_=str(d["id"]),
            role=Role(d["role"]),
            content=str(d.get("content", "")),
            created_at_ms=int(d.get("createdAtMs", 0)),
            original_text=d.get("originalText"),
            reaction=reaction if reaction in REACTIONS else None,
        )

# ===== encrypted log =====
class LocalConversationStore:
    """
    In-memory conversation log mirrored, encrypted, into local storage.
    Each mutation gets a version number; a save that finishes after a newer
    one has already been written is dropped, so storage never goes back in time.
    """
    def __init__(self, user_id: str, storage: LocalStorage, cipher: ConversationCipher):
        self.user_id = str(user_id)
        self.storage = storage
        self.cipher = cipher
        self.messages: List[ConversationMessage] = []
        self.loaded = False
        self._version = 0
        self._written_version = 0
        self._saves: Set[asyncio.Task] = set()

    @property
    def key(self) -> str:
        return history_key(self.user_id)

    async def load(self) -> List[ConversationMessage]:
        blob = self.storage.get(self.key)
        restored: List[ConversationMessage] = []
        if blob:
            data = await asyncio.to_thread(self.cipher.decrypt, self.user_id, blob)
            if isinstance(data, list):
                for rec in data:
                    try:
                        restored.append(ConversationMessage.from_dict(rec))
                    except (KeyError, ValueError, TypeError) as e:
                        log.debug("skipping unreadable history entry: %r", e)
            else:
                log.info("no usable conversation history for user %s, starting empty", self.user_id)
        # messages added while decrypting come after the restored history
        pending = self.messages
        self.messages = restored + pending
        self.loaded = True
        if pending:
            self._changed()
        return self.messages

    # ----- mutations -----
    def append(self, msg: ConversationMessage):
        self.messages.append(msg)
        self._changed()

    def find(self, message_id: str) -> Optional[ConversationMessage]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def remove(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        if len(self.messages) == before:
            return False
        self._changed()
        return True

    def touch(self):
        """Persist after an in-place edit of a message."""
        self._changed()

    # ----- persistence -----
    def _changed(self):
        self._version += 1
        version = self._version
        snapshot = [m.to_dict() for m in self.messages]
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(version, self.cipher.encrypt(self.user_id, snapshot))
            return
        task = loop.create_task(self._save(version, snapshot))
        self._saves.add(task)
        task.add_done_callback(self._saves.discard)

    async def _save(self, version: int, snapshot: List[Dict[str, Any]]):
        try:
            blob = await asyncio.to_thread(self.cipher.encrypt, self.user_id, snapshot)
            self._write(version, blob)
        except Exception:
            log.exception("saving conversation history failed (version %d)", version)

    def _write(self, version: int, blob: str):
        if version <= self._written_version:
            log.debug("dropping stale history write v%d (v%d already stored)", version, self._written_version)
            return
        self.storage.set(self.key, blob)
        self._written_version = version

    async def flush(self):
        while self._saves:
            await asyncio.gather(*list(self._saves))

# ===== session =====
class ChatSessionController:
    """
    User text -> optimistic append -> /ai/chat round trip -> assistant reply.
    send() never blocks and never raises; failures become an inline assistant message.
    """
    def __init__(self, store: LocalConversationStore, api: BackendApi, tr: Optional[I18n] = None,
                 file_id: Optional[int] = None):
        self.store = store
        self.api = api
        self.i18n = tr or I18n()
        self.file_id = file_id
        self._in_flight = 0
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def messages(self) -> List[ConversationMessage]:
        return self.store.messages

    @property
    def thinking(self) -> bool:
        return self._in_flight > 0

    def set_file_context(self, file_id: Optional[int]):
        self.file_id = file_id

    def send(self, text: str) -> Optional[asyncio.Task]:
        question = (text or "").strip()
        if not question:
            return None
        self.store.append(ConversationMessage.user(question))
        self._in_flight += 1
        task = asyncio.get_running_loop().create_task(self._ask(question, self.file_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _ask(self, question: str, file_id: Optional[int]):
        tr = self.i18n.t
        try:
            answer = await asyncio.to_thread(self.api.chat, question, file_id)
            reply = answer.strip() or tr("chat.no_answer")
        except ApiError as e:
            reason = tr("chat.rate_limited") if e.rate_limited else (e.message or tr("chat.network_error"))
            log.warning("chat request failed: %s", reason)
            reply = tr("chat.error", reason=reason)
        except Exception:
            log.exception("chat request crashed")
            reply = tr("chat.error", reason=tr("chat.network_error"))
        finally:
            self._in_flight -= 1
        if self._closed:
            log.debug("chat session closed, dropping reply")
            return
        self.store.append(ConversationMessage.assistant(reply))

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self):
        self._closed = True

    # ----- message actions -----
    def delete_message(self, message_id: str) -> bool:
        return self.store.remove(message_id)

    def edit_message(self, message_id: str, text: str) -> bool:
        msg = self.store.find(message_id)
        text = (text or "").strip()
        if msg is None or msg.role is not Role.USER or not text:
            return False
        msg.original_text = text
        msg.content = render_markdown(text)
        self.store.touch()
        return True

    def toggle_reaction(self, message_id: str, reaction: str) -> bool:
        if reaction not in REACTIONS:
            raise ValueError(f"unknown reaction {reaction!r}")
        msg = self.store.find(message_id)
        if msg is None:
            return False
        msg.reaction = None if msg.reaction == reaction else reaction
        self.store.touch()
        return True

    def search(self, query: str) -> List[ConversationMessage]:
        q = (query or "").lower()
        if not q:
            return list(self.messages)
        return [m for m in self.messages if q in m.text.lower()]

    def export_text(self) -> str:
        parts = []
        for m in self.messages:
            stamp = datetime.fromtimestamp(m.created_at_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
            parts.append(f"[{m.role.value.upper()}] {stamp}\n{to_plain_text(m.content)}\n\n")
        return "---\n\n".join(parts)
