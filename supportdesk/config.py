import os, json

CONFIG_FILE = "config.json"

DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:8000/api/v1",
    "user_id": "anon",
    # which side of the ticket thread this client speaks for
    "viewer": "user",
    "language": "en",
    "storage_file": "local_storage.json",
    # network
    "proxy_url": "",
    "request_timeout": 20.0,
    "chat_timeout": 60.0,
    # polling
    "detail_poll_interval": 3.0,
    "list_poll_interval": 5.0,
    "log_level": "warning",
}

def load_config(path: str = CONFIG_FILE) -> dict:
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
        # backfill defaults
        for k, v in DEFAULT_CONFIG.items():
            cfg.setdefault(k, v)
        return cfg
    with open(path, "w", encoding="utf-8") as f:
        json.dump(DEFAULT_CONFIG, f, indent=4, ensure_ascii=False)
    return DEFAULT_CONFIG.copy()

def save_config(cfg: dict, path: str = CONFIG_FILE):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=4, ensure_ascii=False)
