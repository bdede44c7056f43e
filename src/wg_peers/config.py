# src/wg_peers/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional


DEFAULT_WG_DIR = Path.home() / "wg"
DEFAULT_INTERFACE = "wg0"
DEFAULT_NETWORK = "10.100.0.0/24"
DEFAULT_SERVER_ADDRESS = "10.100.0.1"
DEFAULT_PORT = 51820
DEFAULT_PEERS_FILE = Path("/etc/nixos/modules/wg-peers.nix")
DEFAULT_SECRETS_DIR = Path("/etc/nixos/secrets/wg-clients")
DEFAULT_SERVER_PRIVATE_KEY = Path("/etc/nixos/secrets/wg-private")
DEFAULT_DNS = ["1.1.1.1", "1.0.0.1"]
DEFAULT_KEEPALIVE = 25
DEFAULT_PROBE_TIMEOUT = 5.0

ENV_PREFIX = "WG_PEERS_"


@dataclass
class Settings:
    wg_dir: Path = DEFAULT_WG_DIR
    interface: str = DEFAULT_INTERFACE
    network: str = DEFAULT_NETWORK
    server_address: str = DEFAULT_SERVER_ADDRESS
    port: int = DEFAULT_PORT
    peers_file: Path = DEFAULT_PEERS_FILE
    secrets_dir: Path = DEFAULT_SECRETS_DIR
    server_private_key_file: Path = DEFAULT_SERVER_PRIVATE_KEY
    dns: List[str] = field(default_factory=lambda: list(DEFAULT_DNS))
    keepalive: int = DEFAULT_KEEPALIVE
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    use_sudo: bool = True

    # Fichiers dérivés, tous sous wg_dir
    @property
    def cache_file(self) -> Path:
        return self.wg_dir / "used-ips.txt"

    @property
    def endpoint_file(self) -> Path:
        return self.wg_dir / ".endpoint"

    @property
    def lock_file(self) -> Path:
        return self.wg_dir / ".lock"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Construit la configuration à partir des variables WG_PEERS_*.
        Les variables absentes gardent la valeur par défaut.
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + key)
            return value if value else None

        settings = cls()
        if get("DIR"):
            settings.wg_dir = Path(get("DIR")).expanduser()
        if get("INTERFACE"):
            settings.interface = get("INTERFACE")
        if get("NETWORK"):
            settings.network = get("NETWORK")
        if get("SERVER_ADDRESS"):
            settings.server_address = get("SERVER_ADDRESS")
        if get("PORT"):
            settings.port = int(get("PORT"))
        if get("PEERS_FILE"):
            settings.peers_file = Path(get("PEERS_FILE")).expanduser()
        if get("SECRETS_DIR"):
            settings.secrets_dir = Path(get("SECRETS_DIR")).expanduser()
        if get("SERVER_PRIVATE_KEY"):
            settings.server_private_key_file = Path(get("SERVER_PRIVATE_KEY")).expanduser()
        if get("DNS"):
            settings.dns = [d.strip() for d in get("DNS").split(",") if d.strip()]
        if get("KEEPALIVE"):
            settings.keepalive = int(get("KEEPALIVE"))
        if get("PROBE_TIMEOUT"):
            settings.probe_timeout = float(get("PROBE_TIMEOUT"))
        if get("USE_SUDO"):
            settings.use_sudo = get("USE_SUDO").lower() not in ("0", "false", "no")
        return settings
