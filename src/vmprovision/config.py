import os
from typing import List, Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Format: user@realm!tokenname=secret
    API_TOKEN = os.getenv("API_TOKEN")
    PVE_HOST = os.getenv("PVE_HOST", "pve")
    PVE_NODE = os.getenv("PVE_NODE") or None
    VERIFY_SSL = _env_bool("VERIFY_SSL")
    USE_CLI_FALLBACK = _env_bool("USE_CLI_FALLBACK", "true")

    OWNER_TAG_PREFIX = os.getenv("OWNER_TAG_PREFIX", "owner-")
    NO_BACKUP_TAG = os.getenv("NO_BACKUP_TAG", "no-backup")
    NETWORK_MODEL = os.getenv("NETWORK_MODEL", "virtio")

    VM_START_TIMEOUT = int(os.getenv("VM_START_TIMEOUT", "180"))
    TASK_TIMEOUT = int(os.getenv("TASK_TIMEOUT", "600"))

    @staticmethod
    def get_dns_servers() -> List[str]:
        """Reads DNS_SERVERS (comma separated) e.g. '10.0.0.53,1.1.1.1'."""
        raw = os.getenv("DNS_SERVERS", "")
        return [server.strip() for server in raw.split(",") if server.strip()]

    @staticmethod
    def get_search_domain() -> Optional[str]:
        return os.getenv("SEARCH_DOMAIN", "").strip() or None
