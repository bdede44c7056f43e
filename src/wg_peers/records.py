# src/wg_peers/records.py
from __future__ import annotations
import ipaddress
import logging
import shutil
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import AlreadyExistsError, NotFoundError, PartialStateError
from .fileio import atomic_write_text
from .ipam import AllocationCache
from .keys import KeyStore
from .models import Peer, PeerListEntry, PeerTraces
from .peerlist import render_peer_list
from .privileged import PrivilegedFileAccess


logger = logging.getLogger(__name__)

ADDRESS_FILE = "ip.txt"


class PeerRecordStore:
    """
    État durable des peers :
      ~/wg/<peer>/ip.txt        IP attribuée
      ~/wg/<peer>.conf          config client (600)
      <secrets>/<peer>-*        clés (via KeyStore)
      wg-peers.nix              liste déclarative, toujours régénérée en entier
    """

    def __init__(
        self,
        wg_dir: Path,
        peers_file: Path,
        keys: KeyStore,
        cache: AllocationCache,
        access: PrivilegedFileAccess,
    ):
        self.wg_dir = Path(wg_dir)
        self.peers_file = Path(peers_file)
        self.keys = keys
        self.cache = cache
        self.access = access

    # ---------- Chemins ----------

    def peer_dir(self, name: str) -> Path:
        return self.wg_dir / name

    def address_file(self, name: str) -> Path:
        return self.peer_dir(name) / ADDRESS_FILE

    def config_path(self, name: str) -> Path:
        return self.wg_dir / f"{name}.conf"

    # ---------- Lecture ----------

    def traces(self, name: str) -> PeerTraces:
        directory = self.peer_dir(name)
        address_file = self.address_file(name)
        private_key = self.keys.private_key_path(name)
        public_key = self.keys.public_key_path(name)
        config_file = self.config_path(name)
        return PeerTraces(
            name=name,
            directory=directory if directory.is_dir() else None,
            address_file=address_file if address_file.is_file() else None,
            private_key=private_key if self.keys.has_private_key(name) else None,
            public_key=public_key if self.keys.has_public_key(name) else None,
            config_file=config_file if config_file.is_file() else None,
        )

    def address_of(self, name: str) -> Optional[ipaddress.IPv4Address]:
        path = self.address_file(name)
        if not path.is_file():
            return None
        try:
            return ipaddress.IPv4Address(path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as exc:
            logger.warning("Malformed address record %s: %s", path, exc)
            return None

    def list_valid(self) -> Iterator[Peer]:
        """
        Peers avec un dossier ET un ip.txt lisible, dans l'ordre du dossier.
        Chaque appel repart de zéro.
        """
        if not self.wg_dir.is_dir():
            return
        for peer_dir in self.wg_dir.iterdir():
            if not peer_dir.is_dir() or peer_dir.name.startswith("."):
                continue
            name = peer_dir.name
            if not self.address_file(name).is_file():
                logger.warning("Directory %s has no %s, skipping", peer_dir, ADDRESS_FILE)
                continue
            address = self.address_of(name)
            if address is None:
                continue
            yield Peer(
                name=name,
                address=address,
                directory=peer_dir,
                config_path=self.config_path(name),
            )

    def get(self, name: str) -> Peer:
        address = self.address_of(name)
        if address is None:
            raise NotFoundError(f"Peer '{name}' has no address record")
        return Peer(
            name=name,
            address=address,
            directory=self.peer_dir(name),
            config_path=self.config_path(name),
        )

    def _peer_dir_names(self) -> List[str]:
        if not self.wg_dir.is_dir():
            return []
        return [
            p.name for p in self.wg_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        ]

    def orphans(self) -> List[str]:
        """
        Peers à moitié présents : une clé privée sans dossier, ou un dossier
        sans aucune clé (ex : add interrompu avant l'écriture des clés).
        """
        key_names = set(self.keys.names())
        found = {n for n in key_names if not self.peer_dir(n).is_dir()}
        for name in self._peer_dir_names():
            if name not in key_names and not self.keys.has_public_key(name):
                found.add(name)
        return sorted(found)

    def read_client_config(self, name: str) -> str:
        path = self.config_path(name)
        if not path.is_file():
            raise NotFoundError(f"Config file not found: {path}")
        return path.read_text(encoding="utf-8")

    # ---------- Écriture ----------

    def create(self, name: str, address: ipaddress.IPv4Address) -> Peer:
        traces = self.traces(name)
        if traces.exists:
            raise AlreadyExistsError(f"Peer '{name}' already exists", traces.found())

        peer_dir = self.peer_dir(name)
        peer_dir.mkdir(parents=True)
        peer_dir.chmod(0o750)
        atomic_write_text(self.address_file(name), f"{address}\n", 0o640)
        return self.get(name)

    def write_client_config(self, name: str, content: str) -> Path:
        path = atomic_write_text(self.config_path(name), content, 0o600)
        logger.info("Client config created: %s", path)
        return path

    def delete(self, name: str) -> List[Tuple[str, Path]]:
        """
        Supprime tout ce qui existe pour `name`. Idempotent : les artefacts
        déjà absents sont ignorés.
        """
        removed: List[Tuple[str, Path]] = []

        address = self.address_of(name)
        if address is not None and self.cache.discard(address):
            logger.debug("Removed IP %s from cache", address)
            removed.append((f"Cached IP {address}", self.cache.path))

        peer_dir = self.peer_dir(name)
        if peer_dir.is_dir():
            shutil.rmtree(peer_dir)
            removed.append(("Directory", peer_dir))

        for path in self.keys.delete(name):
            label = "Private key" if path == self.keys.private_key_path(name) else "Public key"
            removed.append((label, path))

        config = self.config_path(name)
        if config.is_file():
            config.unlink()
            removed.append(("Client config", config))

        for label, path in removed:
            logger.debug("Removed %s: %s", label.lower(), path)
        return removed

    def regenerate_peer_list(self) -> List[PeerListEntry]:
        """
        Réécrit le fichier de peers à partir de list_valid(). Un peer sans
        clé publique est sauté (avertissement), jamais bloquant.
        """
        entries = []
        for peer in self.list_valid():
            try:
                public_key = self.keys.public_key(peer.name)
            except PartialStateError as exc:
                logger.warning("%s, skipping", exc)
                continue
            entries.append(PeerListEntry(name=peer.name, public_key=public_key, address=peer.address))

        self.access.makedirs(self.peers_file.parent, 0o755)
        self.access.write_text(self.peers_file, render_peer_list(entries), 0o644)
        logger.info("Updated peers file: %s (%d peers)", self.peers_file, len(entries))
        return entries
