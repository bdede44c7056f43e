# src/wg_peers/models.py
from __future__ import annotations
import ipaddress
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import InvalidAddressError, InvalidNameError


NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_name(name: str) -> str:
    if not name or not NAME_RE.match(name) or name.endswith(".conf"):
        raise InvalidNameError(
            f"Invalid peer name '{name}' "
            "(letters, digits, '.', '_' and '-' only; must not end with '.conf')"
        )
    return name


@dataclass(frozen=True)
class AddressPool:
    network: ipaddress.IPv4Network      # ex: 10.100.0.0/24
    reserved: ipaddress.IPv4Address     # IP du serveur, ex: 10.100.0.1

    @classmethod
    def from_strings(cls, cidr: str, reserved: str) -> "AddressPool":
        try:
            network = ipaddress.IPv4Network(cidr)
            server = ipaddress.IPv4Address(reserved)
        except ValueError as exc:
            raise InvalidAddressError(str(exc)) from exc
        if server not in network:
            raise InvalidAddressError(f"Server address {server} is outside {network}")
        return cls(network=network, reserved=server)

    @property
    def prefixlen(self) -> int:
        return self.network.prefixlen

    def contains(self, address: ipaddress.IPv4Address) -> bool:
        """Adresse hôte du pool (ni réseau, ni broadcast)."""
        return (
            address in self.network
            and address != self.network.network_address
            and address != self.network.broadcast_address
        )

    def candidates(self) -> Iterator[ipaddress.IPv4Address]:
        # Ordre croissant, l'IP serveur est toujours sautée
        for host in self.network.hosts():
            if host != self.reserved:
                yield host

    def validate(self, text: str) -> ipaddress.IPv4Address:
        try:
            address = ipaddress.IPv4Address(text.strip())
        except ValueError as exc:
            raise InvalidAddressError(f"Invalid IPv4 address '{text}'") from exc
        if not self.contains(address):
            raise InvalidAddressError(f"Address {address} is not a host address of {self.network}")
        if address == self.reserved:
            raise InvalidAddressError(f"Address {address} is reserved for the server")
        return address


@dataclass
class KeyPair:
    private_key: str
    public_key: str


@dataclass
class Peer:
    name: str
    address: ipaddress.IPv4Address
    directory: Path
    config_path: Path
    public_key: Optional[str] = None

    @property
    def config_rendered(self) -> bool:
        return self.config_path.exists()


@dataclass
class PeerTraces:
    """Tout ce qui existe sur disque pour un nom de peer."""

    name: str
    directory: Optional[Path] = None
    address_file: Optional[Path] = None
    private_key: Optional[Path] = None
    public_key: Optional[Path] = None
    config_file: Optional[Path] = None

    def found(self) -> List[Tuple[str, Path]]:
        labels = [
            ("Directory", self.directory),
            ("Address record", self.address_file),
            ("Private key", self.private_key),
            ("Public key", self.public_key),
            ("Client config", self.config_file),
        ]
        return [(label, path) for label, path in labels if path is not None]

    @property
    def exists(self) -> bool:
        return bool(self.found())

    @property
    def has_keys(self) -> bool:
        return self.private_key is not None or self.public_key is not None

    @property
    def orphaned(self) -> bool:
        # Clés sans dossier, ou dossier sans aucune clé
        if self.directory is None:
            return self.has_keys
        return not self.has_keys


@dataclass
class PeerListEntry:
    name: str
    public_key: str
    address: ipaddress.IPv4Address


@dataclass
class AddResult:
    peer: Peer
    endpoint: str
    config: str
    qr_shown: bool = False


@dataclass
class RemovalReport:
    name: str
    address: Optional[ipaddress.IPv4Address]
    removed: List[Tuple[str, Path]] = field(default_factory=list)


@dataclass
class PeerDetails:
    name: str
    address: Optional[ipaddress.IPv4Address]
    public_key: Optional[str]
    private_key_file: Optional[Path]
    config_file: Optional[Path]
    orphaned: bool = False
    directory: Optional[Path] = None


@dataclass
class PeerListing:
    peers: List[Peer] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
