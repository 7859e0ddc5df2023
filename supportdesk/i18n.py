import os, json
from typing import Dict, Optional

_BUILTIN: Dict[str, Dict[str, str]] = {
    "en": {
        "chat.error": "Sorry, I couldn't get an answer right now. ({reason})",
        "chat.rate_limited": "Rate limit exceeded. Please try again later.",
        "chat.network_error": "Network error",
        "chat.no_answer": "No response generated. Please try rephrasing your question.",
        "ticket.you": "You",
        "ticket.default_subject": "Support Request",
        "ticket.enter_message": "Please enter a message",
        "ticket.created": "Message sent successfully",
        "ticket.create_failed": "Failed to send message",
        "ticket.reply_failed": "Failed to send reply",
        "ticket.load_failed": "Failed to load messages",
        "console.new_message": "[#{id} {subject}] {sender}: {text}",
        "console.unread": "{count} unread",
    },
    "fr": {
        "chat.error": "Désolé, impossible d'obtenir une réponse pour le moment. ({reason})",
        "chat.rate_limited": "Limite de requêtes atteinte. Réessayez plus tard.",
        "chat.network_error": "Erreur réseau",
        "chat.no_answer": "Aucune réponse générée. Essayez de reformuler votre question.",
        "ticket.you": "Vous",
        "ticket.default_subject": "Demande d'assistance",
        "ticket.enter_message": "Veuillez saisir un message",
        "ticket.created": "Message envoyé",
        "ticket.create_failed": "Échec de l'envoi du message",
        "ticket.reply_failed": "Échec de l'envoi de la réponse",
        "ticket.load_failed": "Impossible de charger les messages",
        "console.new_message": "[#{id} {subject}] {sender} : {text}",
        "console.unread": "{count} non lu(s)",
    },
}

class I18n:
    """
    Built-in en/fr tables; a langs_dir may hold <lang>.json files that
    override or extend them.
    """
    def __init__(self, default_lang: str = "en", langs_dir: Optional[str] = None):
        self.langs_dir = langs_dir
        self.default_lang = default_lang if default_lang in _BUILTIN else "en"
        self._dict: Dict[str, str] = {}
        self._lang = self.default_lang
        self.load(default_lang)

    def _read_override(self, lang: str) -> Dict[str, str]:
        if not self.langs_dir:
            return {}
        path = os.path.join(self.langs_dir, f"{lang}.json")
        if not os.path.exists(path):
            return {}
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def load(self, lang: str):
        if lang not in _BUILTIN and not self._read_override(lang):
            lang = self.default_lang
        merged = dict(_BUILTIN["en"])
        merged.update(_BUILTIN.get(lang, {}))
        merged.update(self._read_override(lang))
        self._dict = merged
        self._lang = lang

    def t(self, key: str, **kwargs) -> str:
        text = self._dict.get(key, key)
        if kwargs:
            try:
                text = text.format(**kwargs)
            except (KeyError, IndexError, ValueError):
                pass
        return text

    def current_lang(self) -> str:
        return self._lang
