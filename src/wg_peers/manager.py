# src/wg_peers/manager.py
from __future__ import annotations
import ipaddress
import logging
from typing import Callable, List, Optional, Sequence

from .config import Settings
from .endpoint import DEFAULT_PROBES, EndpointResolver, EndpointStore, Prompter, PublicIPProbe
from .errors import (
    AddressInUseError,
    AlreadyExistsError,
    NotFoundError,
    PartialStateError,
    PrivilegeError,
)
from .fileio import state_lock
from .ipam import (
    AddressAllocator,
    AddressSource,
    AllocationCache,
    CacheSource,
    LiveInterfaceSource,
    PeerDirectorySource,
    PeerListSource,
    discover_used_addresses,
)
from .keys import KeyGenerator, KeyStore, WgKeyGenerator
from .models import (
    AddResult,
    AddressPool,
    PeerDetails,
    PeerListing,
    RemovalReport,
    validate_name,
)
from .privileged import LocalFileAccess, PrivilegedFileAccess, SudoFileAccess
from .records import PeerRecordStore
from .wireguard import render_client_conf


logger = logging.getLogger(__name__)

QRPrinter = Callable[[str], None]


class PeerLifecycleManager:
    """
    Orchestration add / remove / clean / show / list.
    Chaque mutation se termine par la régénération du fichier de peers.
    """

    def __init__(
        self,
        settings: Settings,
        pool: AddressPool,
        cache: AllocationCache,
        allocator: AddressAllocator,
        keys: KeyStore,
        records: PeerRecordStore,
        endpoints: EndpointResolver,
        access: PrivilegedFileAccess,
        qr_printer: Optional[QRPrinter] = None,
    ):
        self.settings = settings
        self.pool = pool
        self.cache = cache
        self.allocator = allocator
        self.keys = keys
        self.records = records
        self.endpoints = endpoints
        self.access = access
        self.qr_printer = qr_printer

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        prompter: Prompter,
        access: Optional[PrivilegedFileAccess] = None,
        generator: Optional[KeyGenerator] = None,
        probes: Sequence[PublicIPProbe] = DEFAULT_PROBES,
        live_interface: bool = True,
        qr_printer: Optional[QRPrinter] = None,
    ) -> "PeerLifecycleManager":
        if access is None:
            access = SudoFileAccess() if settings.use_sudo else LocalFileAccess()

        pool = AddressPool.from_strings(settings.network, settings.server_address)
        cache = AllocationCache(settings.cache_file)
        keys = KeyStore(settings.secrets_dir, access, generator or WgKeyGenerator())

        sources: List[AddressSource] = [
            CacheSource(cache),
            PeerDirectorySource(settings.wg_dir),
            PeerListSource(settings.peers_file, access),
        ]
        if live_interface:
            sources.append(LiveInterfaceSource(settings.interface, settings.use_sudo))

        records = PeerRecordStore(settings.wg_dir, settings.peers_file, keys, cache, access)
        endpoints = EndpointResolver(
            EndpointStore(settings.endpoint_file),
            settings.port,
            prompter,
            probes=probes,
            probe_timeout=settings.probe_timeout,
        )
        return cls(
            settings=settings,
            pool=pool,
            cache=cache,
            allocator=AddressAllocator(pool, sources),
            keys=keys,
            records=records,
            endpoints=endpoints,
            access=access,
            qr_printer=qr_printer,
        )

    # ---------- Initialisation ----------

    def prepare(self) -> None:
        """Crée ~/wg, le dossier secrets et le dossier du fichier de peers."""
        wg_dir = self.settings.wg_dir
        wg_dir.mkdir(parents=True, exist_ok=True)
        wg_dir.chmod(0o750)
        try:
            self.access.makedirs(self.settings.secrets_dir, 0o700)
            self.access.makedirs(self.settings.peers_file.parent, 0o755)
        except PrivilegeError as exc:
            logger.warning("%s; key operations will need elevated rights", exc)

    def _locked(self):
        return state_lock(self.settings.lock_file)

    def _tracked_sources(self) -> List[AddressSource]:
        # Tout sauf le cache : ce qui est réellement attribué à un peer
        return [s for s in self.allocator.sources if not isinstance(s, CacheSource)]

    # ---------- add ----------

    def add(
        self,
        name: str,
        address: Optional[str] = None,
        endpoint_override: Optional[str] = None,
    ) -> AddResult:
        validate_name(name)

        with self._locked():
            if address:
                chosen = self.pool.validate(address)
                if chosen in discover_used_addresses(self.pool, self._tracked_sources()):
                    raise AddressInUseError(f"Address {chosen} is already assigned")
            else:
                chosen = self.allocator.next_free_address()

            # Réservée tout de suite, avant tout autre effet de bord
            self.cache.add(chosen)

            traces = self.records.traces(name)
            if traces.exists:
                raise AlreadyExistsError(
                    f"Peer '{name}' already exists (use 'remove {name}' or 'clean {name}' first)",
                    traces.found(),
                )

            logger.info("Adding peer: %s with IP: %s", name, chosen)
            endpoint = self.endpoints.resolve(endpoint_override)
            server_public_key = self.keys.server_public_key(self.settings.server_private_key_file)

            # Clés générées en mémoire d'abord : un échec de wg ne laisse que la réservation
            keypair = self.keys.generate()
            peer = self.records.create(name, chosen)
            self.keys.create(name, keypair)
            peer.public_key = keypair.public_key

            conf = render_client_conf(
                private_key=keypair.private_key,
                address=chosen,
                prefixlen=self.pool.prefixlen,
                server_public_key=server_public_key,
                endpoint=endpoint,
                dns=self.settings.dns,
                keepalive=self.settings.keepalive,
            )
            self.records.write_client_config(name, conf)
            self.records.regenerate_peer_list()

        return AddResult(peer=peer, endpoint=endpoint, config=conf, qr_shown=self._emit_qr(conf))

    def _emit_qr(self, conf: str) -> bool:
        if self.qr_printer is None:
            return False
        try:
            self.qr_printer(conf)
        except Exception as exc:
            logger.warning("QR code display skipped: %s", exc)
            return False
        return True

    # ---------- remove / clean ----------

    def remove(self, name: str) -> RemovalReport:
        return self._delete(name, "Removing peer")

    def clean(self, name: str) -> RemovalReport:
        return self._delete(name, "Cleaning orphaned files for peer")

    def _delete(self, name: str, action: str) -> RemovalReport:
        validate_name(name)

        with self._locked():
            traces = self.records.traces(name)
            if not traces.exists:
                raise NotFoundError(f"Peer '{name}' does not exist")

            logger.warning("%s: %s", action, name)
            address = self.records.address_of(name)
            removed = self.records.delete(name)
            self.records.regenerate_peer_list()

        return RemovalReport(name=name, address=address, removed=removed)

    # ---------- Lecture ----------

    def show(self, name: str) -> PeerDetails:
        validate_name(name)
        traces = self.records.traces(name)
        if not traces.exists:
            raise NotFoundError(f"Peer '{name}' does not exist")

        public_key = None
        if traces.public_key:
            try:
                public_key = self.keys.public_key(name)
            except PartialStateError as exc:
                logger.warning("%s", exc)

        return PeerDetails(
            name=name,
            address=self.records.address_of(name),
            public_key=public_key,
            private_key_file=traces.private_key,
            config_file=traces.config_file,
            orphaned=traces.orphaned,
            directory=traces.directory,
        )

    def list_peers(self) -> PeerListing:
        return PeerListing(peers=list(self.records.list_valid()), orphans=self.records.orphans())

    def qr(self, name: str) -> str:
        validate_name(name)
        return self.records.read_client_config(name)

    # ---------- Endpoint ----------

    def endpoint_info(self) -> Optional[str]:
        return self.endpoints.current()

    def reset_endpoint(self) -> str:
        self.endpoints.clear()
        return self.endpoints.resolve()

    # ---------- Cache ----------

    def reconcile_cache(self) -> List[ipaddress.IPv4Address]:
        """
        Retire du cache les IPs qu'aucune autre source ne connaît
        (ex : un add interrompu après la réservation).
        """
        with self._locked():
            backed = discover_used_addresses(self.pool, self._tracked_sources())
            dropped = self.cache.retain(backed)
        for ip in dropped:
            logger.info("Released stale cached IP %s", ip)
        return dropped
