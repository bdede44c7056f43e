# src/wg_peers/keys.py
from __future__ import annotations
import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol

from .errors import ExternalToolError, MissingDependencyError, PartialStateError, PrivilegeError
from .models import KeyPair
from .privileged import PrivilegedFileAccess


logger = logging.getLogger(__name__)

WG_TIMEOUT = 10
PRIVATE_SUFFIX = "-private"
PUBLIC_SUFFIX = "-public"


# ---------- Génération de clés ----------

class KeyGenerator(Protocol):
    def generate_keypair(self) -> KeyPair: ...

    def public_key(self, private_key: str) -> str: ...


def _which(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise MissingDependencyError(f"'{binary}' not found in PATH (install wireguard-tools)")
    return path


def _run(cmd: List[str], input: str | None = None) -> str:
    try:
        out = subprocess.run(
            cmd, input=input, capture_output=True, text=True, check=True, timeout=WG_TIMEOUT
        )
    except subprocess.CalledProcessError as exc:
        raise ExternalToolError(f"{' '.join(cmd)} failed: {(exc.stderr or '').strip()}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalToolError(f"{' '.join(cmd)} timed out") from exc
    return out.stdout.strip()


class WgKeyGenerator:
    """Clés via wg(8) : genkey, puis pubkey qui lit la clé privée sur stdin."""

    def generate_private_key(self) -> str:
        return _run([_which("wg"), "genkey"])

    def public_key(self, private_key: str) -> str:
        return _run([_which("wg"), "pubkey"], input=private_key.strip() + "\n")

    def generate_keypair(self) -> KeyPair:
        priv = self.generate_private_key()
        return KeyPair(private_key=priv, public_key=self.public_key(priv))


# ---------- Stockage des clés ----------

class KeyStore:
    """
    Clés des peers dans le dossier secrets (root, 700) :
    <secrets_dir>/<peer>-private et <secrets_dir>/<peer>-public, en 600.
    """

    def __init__(self, secrets_dir: Path, access: PrivilegedFileAccess, generator: KeyGenerator):
        self.secrets_dir = Path(secrets_dir)
        self.access = access
        self.generator = generator

    def private_key_path(self, name: str) -> Path:
        return self.secrets_dir / f"{name}{PRIVATE_SUFFIX}"

    def public_key_path(self, name: str) -> Path:
        return self.secrets_dir / f"{name}{PUBLIC_SUFFIX}"

    def has_private_key(self, name: str) -> bool:
        return self.access.exists(self.private_key_path(name))

    def has_public_key(self, name: str) -> bool:
        return self.access.exists(self.public_key_path(name))

    def generate(self) -> KeyPair:
        """Paire en mémoire seulement, rien n'est écrit."""
        return self.generator.generate_keypair()

    def create(self, name: str, keypair: Optional[KeyPair] = None) -> KeyPair:
        if keypair is None:
            keypair = self.generate()
        self.access.makedirs(self.secrets_dir, 0o700)
        self.access.write_text(self.private_key_path(name), keypair.private_key + "\n", 0o600)
        self.access.write_text(self.public_key_path(name), keypair.public_key + "\n", 0o600)
        logger.info("Keys created for %s in %s", name, self.secrets_dir)
        return keypair

    def private_key(self, name: str) -> str:
        path = self.private_key_path(name)
        if not self.access.exists(path):
            raise PartialStateError(f"Private key missing for peer '{name}': {path}")
        return self.access.read_text(path).strip()

    def public_key(self, name: str) -> str:
        path = self.public_key_path(name)
        if not self.access.exists(path):
            raise PartialStateError(f"Public key missing for peer '{name}': {path}")
        key = self.access.read_text(path).strip()
        if not key:
            raise PartialStateError(f"Public key empty for peer '{name}': {path}")
        return key

    def delete(self, name: str) -> List[Path]:
        removed = []
        for path in (self.private_key_path(name), self.public_key_path(name)):
            if self.access.remove(path):
                removed.append(path)
        return removed

    def names(self) -> List[str]:
        """Noms des peers qui possèdent une clé privée."""
        files = self.access.list_files(self.secrets_dir)
        return [f[: -len(PRIVATE_SUFFIX)] for f in files if f.endswith(PRIVATE_SUFFIX)]

    def server_public_key(self, private_key_file: Path) -> str:
        if not self.access.exists(private_key_file):
            raise PrivilegeError(
                f"Cannot read server private key at {private_key_file} "
                "(check that it exists and that you have the right permissions)"
            )
        return self.generator.public_key(self.access.read_text(private_key_file))
