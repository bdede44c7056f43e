# src/wg_peers/ipam.py
from __future__ import annotations
import ipaddress
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence, Set

from .errors import PeerManagerError, PoolExhaustedError
from .fileio import atomic_write_text
from .models import AddressPool
from .peerlist import parse_peer_list_addresses
from .privileged import PrivilegedFileAccess


logger = logging.getLogger(__name__)

WG_SHOW_TIMEOUT = 10


def _parse_host(text: str) -> Optional[ipaddress.IPv4Address]:
    # "10.100.0.2" ou "10.100.0.2/32"
    try:
        return ipaddress.IPv4Address(text.strip().split("/")[0])
    except ValueError:
        return None


# ---------- Cache d'allocation ----------

class AllocationCache:
    """
    ~/wg/used-ips.txt : une IP par ligne, dédupliquée.
    Toute modification passe par un remplacement atomique du fichier.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def addresses(self) -> List[ipaddress.IPv4Address]:
        if not self.path.exists():
            return []
        found = []
        for raw in self.path.read_bytes().splitlines():
            try:
                ip = _parse_host(raw.decode("utf-8"))
            except UnicodeDecodeError:
                ip = None
            if ip is None:
                if raw.strip():
                    logger.warning("Ignoring malformed line in %s: %r", self.path, raw)
                continue
            if ip not in found:
                found.append(ip)
        return found

    def _write(self, addresses: Iterable[ipaddress.IPv4Address]) -> None:
        ordered = sorted(set(addresses))
        atomic_write_text(self.path, "".join(f"{ip}\n" for ip in ordered), 0o640)

    def add(self, address: ipaddress.IPv4Address) -> None:
        self._write([*self.addresses(), address])

    def discard(self, address: ipaddress.IPv4Address) -> bool:
        current = self.addresses()
        if address not in current:
            return False
        self._write(ip for ip in current if ip != address)
        return True

    def retain(self, keep: Set[ipaddress.IPv4Address]) -> List[ipaddress.IPv4Address]:
        """Garde seulement les IPs de `keep`, retourne celles retirées."""
        current = self.addresses()
        dropped = [ip for ip in current if ip not in keep]
        if dropped:
            self._write(ip for ip in current if ip in keep)
        return dropped


# ---------- Sources d'IPs utilisées ----------

class AddressSource(Protocol):
    name: str

    def addresses(self) -> Iterable[ipaddress.IPv4Address]: ...


class CacheSource:
    name = "cache"

    def __init__(self, cache: AllocationCache):
        self.cache = cache

    def addresses(self) -> Iterable[ipaddress.IPv4Address]:
        return self.cache.addresses()


class PeerDirectorySource:
    """Les ip.txt des dossiers de peers : la référence des IPs attribuées."""

    name = "peer directory"

    def __init__(self, wg_dir: Path):
        self.wg_dir = Path(wg_dir)

    def addresses(self) -> Iterator[ipaddress.IPv4Address]:
        if not self.wg_dir.is_dir():
            return
        for peer_dir in self.wg_dir.iterdir():
            ip_file = peer_dir / "ip.txt"
            if not (peer_dir.is_dir() and ip_file.is_file()):
                continue
            try:
                text = ip_file.read_text(encoding="utf-8")
            except (OSError, ValueError) as exc:
                logger.warning("Cannot read %s: %s", ip_file, exc)
                continue
            ip = _parse_host(text)
            if ip is None:
                logger.warning("Malformed address record %s", ip_file)
                continue
            yield ip


class PeerListSource:
    """Les allowedIPs déclarés dans le fichier de peers généré."""

    name = "peers file"

    def __init__(self, peers_file: Path, access: PrivilegedFileAccess):
        self.peers_file = Path(peers_file)
        self.access = access

    def addresses(self) -> List[ipaddress.IPv4Address]:
        if not self.access.exists(self.peers_file):
            return []
        return parse_peer_list_addresses(self.access.read_text(self.peers_file))


class LiveInterfaceSource:
    """`wg show <iface> allowed-ips` : ce qui tourne vraiment en ce moment."""

    name = "active WireGuard"

    def __init__(self, interface: str, use_sudo: bool = True):
        self.interface = interface
        self.use_sudo = use_sudo

    def addresses(self) -> List[ipaddress.IPv4Address]:
        wg = shutil.which("wg")
        if wg is None:
            logger.debug("wg not installed, skipping live interface check")
            return []
        cmd = [wg, "show", self.interface, "allowed-ips"]
        if self.use_sudo:
            cmd = ["sudo", "-n", *cmd]
        try:
            out = subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=WG_SHOW_TIMEOUT
            ).stdout
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Cannot query interface %s: %s", self.interface, exc)
            return []
        return parse_allowed_ips(out)


def parse_allowed_ips(output: str) -> List[ipaddress.IPv4Address]:
    # Format : "<pubkey>\t10.100.0.2/32 10.100.0.3/32"
    found = []
    for line in output.splitlines():
        for token in line.split()[1:]:
            if token.endswith("/32"):
                ip = _parse_host(token)
                if ip is not None:
                    found.append(ip)
    return found


# ---------- Allocation ----------

def discover_used_addresses(
    pool: AddressPool, sources: Sequence[AddressSource]
) -> Set[ipaddress.IPv4Address]:
    """
    Union de toutes les sources, dédupliquée. Les IPs hors du pool sont ignorées,
    l'IP du serveur est toujours réservée.
    """
    used = {pool.reserved}
    for source in sources:
        try:
            found = list(source.addresses())
        except (OSError, ValueError, PeerManagerError) as exc:
            logger.warning("Skipping source %s: %s", source.name, exc)
            continue
        for ip in found:
            if pool.contains(ip) and ip not in used:
                logger.debug("Found used IP from %s: %s", source.name, ip)
                used.add(ip)
    logger.debug("Total used IPs: %d", len(used))
    return used


def next_free_address(
    pool: AddressPool, used: Set[ipaddress.IPv4Address]
) -> ipaddress.IPv4Address:
    for host in pool.candidates():
        if host not in used:
            return host
    raise PoolExhaustedError(f"No available IP addresses in {pool.network}")


class AddressAllocator:
    """
    Calcule la prochaine IP libre. N'écrit rien : c'est à l'appelant
    d'inscrire l'IP retournée dans le cache.
    """

    def __init__(self, pool: AddressPool, sources: Sequence[AddressSource]):
        self.pool = pool
        self.sources = list(sources)

    def used_addresses(self) -> Set[ipaddress.IPv4Address]:
        return discover_used_addresses(self.pool, self.sources)

    def next_free_address(self) -> ipaddress.IPv4Address:
        address = next_free_address(self.pool, self.used_addresses())
        logger.info("Next available IP: %s", address)
        return address
