"""End-to-end lifecycle tests: add / remove / clean / show / list against a tmp tree."""

from __future__ import annotations

import ipaddress
import re

import pytest

from conftest import DETECTED_IP
from wg_peers.config import Settings
from wg_peers.errors import (
    AddressInUseError,
    AlreadyExistsError,
    InvalidAddressError,
    InvalidNameError,
    MissingDependencyError,
    NotFoundError,
    PrivilegeError,
    StateLockedError,
)
from wg_peers.fileio import state_lock
from wg_peers.peerlist import parse_peer_list_addresses
from wg_peers.privileged import LocalFileAccess

IP = ipaddress.IPv4Address


def peer_list_names(manager) -> set:
    text = manager.settings.peers_file.read_text()
    return set(re.findall(r"\{ # (\S+)", text))


def valid_names(manager) -> set:
    return {p.name for p in manager.records.list_valid()}


def test_add_allocates_and_renders(manager) -> None:
    result = manager.add("alice")

    assert result.peer.address == IP("10.100.0.2")
    assert result.endpoint == f"{DETECTED_IP}:51820"
    assert result.peer.public_key == "pub-priv-1"

    conf_path = manager.records.config_path("alice")
    assert conf_path.read_text() == result.config
    assert conf_path.stat().st_mode & 0o777 == 0o600
    assert "PrivateKey = priv-1" in result.config
    assert "Address = 10.100.0.2/24" in result.config
    assert "PublicKey = pub-server-priv" in result.config
    assert "DNS = 1.1.1.1, 1.0.0.1" in result.config
    assert "AllowedIPs = 0.0.0.0/0" in result.config
    assert "PersistentKeepalive = 25" in result.config

    assert manager.cache.addresses() == [IP("10.100.0.2")]
    assert peer_list_names(manager) == {"alice"}
    assert 'publicKey = "pub-priv-1";' in manager.settings.peers_file.read_text()


def test_addresses_are_unique(manager) -> None:
    addresses = [manager.add(f"peer{i}").peer.address for i in range(6)]

    assert len(set(addresses)) == 6
    assert manager.pool.reserved not in addresses
    assert addresses == sorted(addresses)


def test_add_then_show_round_trip(manager) -> None:
    added = manager.add("alice")
    details = manager.show("alice")

    assert details.address == added.peer.address
    assert details.public_key == "pub-priv-1"
    assert details.private_key_file == manager.keys.private_key_path("alice")
    assert details.config_file == manager.records.config_path("alice")
    assert details.orphaned is False


def test_cached_address_is_skipped_and_released_on_remove(make_manager, tmp_path) -> None:
    nixos = tmp_path / "nixos"
    settings = Settings(
        wg_dir=tmp_path / "wg",
        network="10.0.0.0/24",
        server_address="10.0.0.1",
        peers_file=nixos / "modules" / "wg-peers.nix",
        secrets_dir=nixos / "secrets" / "wg-clients",
        server_private_key_file=nixos / "secrets" / "wg-private",
        use_sudo=False,
    )
    manager = make_manager(settings=settings)
    manager.cache.add(IP("10.0.0.2"))

    assert manager.add("x").peer.address == IP("10.0.0.3")

    manager.remove("x")
    assert IP("10.0.0.3") not in manager.cache.addresses()
    assert parse_peer_list_addresses(settings.peers_file.read_text()) == []


def test_list_convergence(manager) -> None:
    for name in ("a", "b", "c", "d"):
        manager.add(name)
        assert peer_list_names(manager) == valid_names(manager)

    manager.remove("b")
    assert peer_list_names(manager) == valid_names(manager) == {"a", "c", "d"}

    manager.clean("d")
    manager.add("e")
    assert peer_list_names(manager) == valid_names(manager) == {"a", "c", "e"}

    listed = set(parse_peer_list_addresses(manager.settings.peers_file.read_text()))
    assert listed == {p.address for p in manager.records.list_valid()}


def test_freed_address_is_reused_lowest_first(manager) -> None:
    manager.add("a")
    manager.add("b")
    manager.add("c")
    manager.remove("b")

    assert manager.add("d").peer.address == IP("10.100.0.3")


@pytest.mark.parametrize("operation", ["remove", "clean"])
def test_deletion_twice(manager, operation) -> None:
    manager.add("alice")
    manager.add("bob")
    delete = getattr(manager, operation)

    report = delete("alice")
    assert report.address == IP("10.100.0.2")
    assert {label for label, _ in report.removed} >= {"Directory", "Private key", "Public key", "Client config"}

    snapshot = manager.settings.peers_file.read_text()
    with pytest.raises(NotFoundError):
        delete("alice")
    assert manager.settings.peers_file.read_text() == snapshot
    assert peer_list_names(manager) == {"bob"}


def test_remove_unknown_peer(manager) -> None:
    with pytest.raises(NotFoundError):
        manager.remove("ghost")
    assert not manager.settings.peers_file.exists()


def test_key_only_peer_blocks_add_and_is_listed_as_orphan(manager) -> None:
    key = manager.keys.private_key_path("bob")
    key.write_text("priv\n")

    with pytest.raises(AlreadyExistsError) as excinfo:
        manager.add("bob", "", "203.0.113.5")

    assert str(key) in "\n".join(excinfo.value.details())
    assert not manager.records.peer_dir("bob").exists()
    assert manager.list_peers().orphans == ["bob"]


def test_clean_removes_orphaned_keys(manager) -> None:
    manager.keys.private_key_path("bob").write_text("priv\n")
    manager.keys.public_key_path("bob").write_text("pub\n")

    report = manager.clean("bob")

    assert report.address is None
    assert [label for label, _ in report.removed] == ["Private key", "Public key"]
    assert manager.list_peers().orphans == []
    assert manager.add("bob").peer.address == IP("10.100.0.2")


def test_endpoint_override_wins_over_saved(manager) -> None:
    manager.endpoints.store.save("192.0.2.1:51820")

    result = manager.add("carol", "", "203.0.113.5")

    assert result.endpoint == "203.0.113.5:51820"
    assert manager.endpoint_info() == "203.0.113.5:51820"
    assert "Endpoint = 203.0.113.5:51820" in result.config


def test_explicit_address(manager) -> None:
    assert manager.add("alice", "10.100.0.50").peer.address == IP("10.100.0.50")
    assert manager.add("bob").peer.address == IP("10.100.0.2")


@pytest.mark.parametrize("address", ["10.100.0.1", "10.100.0.0", "10.100.0.255", "10.200.0.5", "bogus"])
def test_invalid_explicit_address_reserves_nothing(manager, address) -> None:
    with pytest.raises(InvalidAddressError):
        manager.add("alice", address)
    assert manager.cache.addresses() == []
    assert not manager.records.traces("alice").exists


def test_explicit_address_already_assigned(manager) -> None:
    manager.add("alice")
    with pytest.raises(AddressInUseError):
        manager.add("bob", "10.100.0.2")


def test_failed_add_keeps_reservation_until_reconcile(manager) -> None:
    manager.records.peer_dir("alice").mkdir(parents=True)

    with pytest.raises(AlreadyExistsError):
        manager.add("alice")
    assert manager.cache.addresses() == [IP("10.100.0.2")]

    assert manager.add("bob").peer.address == IP("10.100.0.3")

    assert manager.reconcile_cache() == [IP("10.100.0.2")]
    assert manager.cache.addresses() == [IP("10.100.0.3")]


def test_peer_list_failure_fails_the_command(make_manager, settings) -> None:
    class ReadOnlyPeersFile(LocalFileAccess):
        def write_text(self, path, content, mode=0o600):
            if path == settings.peers_file:
                raise PrivilegeError(f"Cannot write {path}")
            super().write_text(path, content, mode)

    manager = make_manager(access=ReadOnlyPeersFile())
    with pytest.raises(PrivilegeError):
        manager.add("alice")


def test_qr_failure_does_not_fail_add(make_manager) -> None:
    def broken_printer(conf):
        raise OSError("terminal gone")

    result = make_manager(qr_printer=broken_printer).add("alice")
    assert result.qr_shown is False
    assert result.peer.config_rendered is True


def test_qr_printer_receives_config(make_manager) -> None:
    printed = []
    manager = make_manager(qr_printer=printed.append)

    result = manager.add("alice")
    assert printed == [result.config]
    assert manager.qr("alice") == result.config


def test_qr_without_config(manager) -> None:
    with pytest.raises(NotFoundError):
        manager.qr("alice")


def test_concurrent_mutation_is_refused(manager) -> None:
    with state_lock(manager.settings.lock_file):
        with pytest.raises(StateLockedError):
            manager.add("alice")
    assert manager.cache.addresses() == []


def test_invalid_names(manager) -> None:
    for name in ("", "../etc", ".hidden", "alice.conf", "a b"):
        with pytest.raises(InvalidNameError):
            manager.add(name)


def test_show_unknown_peer(manager) -> None:
    with pytest.raises(NotFoundError):
        manager.show("nobody")


def test_reset_endpoint(manager, prompter) -> None:
    manager.endpoints.store.save("192.0.2.1:51820")
    assert manager.reset_endpoint() == f"{DETECTED_IP}:51820"
    assert manager.endpoint_info() == f"{DETECTED_IP}:51820"


def test_add_survives_undecodable_address_record(manager) -> None:
    junk = manager.records.peer_dir("junk")
    junk.mkdir(parents=True)
    (junk / "ip.txt").write_bytes(b"\xff\xfe\x00garbage")

    assert manager.add("alice").peer.address == IP("10.100.0.2")
    assert peer_list_names(manager) == {"alice"}


def test_key_generation_failure_leaves_only_the_reservation(manager, monkeypatch) -> None:
    def fail():
        raise MissingDependencyError("wg is not installed")

    monkeypatch.setattr(manager.keys.generator, "generate_keypair", fail)

    with pytest.raises(MissingDependencyError):
        manager.add("alice")

    assert not manager.records.peer_dir("alice").exists()
    assert not manager.records.traces("alice").exists
    assert manager.cache.addresses() == [IP("10.100.0.2")]
    listing = manager.list_peers()
    assert listing.peers == [] and listing.orphans == []

    assert manager.reconcile_cache() == [IP("10.100.0.2")]


def test_key_write_failure_leaves_a_labelled_orphan(manager, monkeypatch) -> None:
    def fail(name, keypair=None):
        raise PrivilegeError("sudo refused")

    monkeypatch.setattr(manager.keys, "create", fail)

    with pytest.raises(PrivilegeError):
        manager.add("alice")

    details = manager.show("alice")
    assert details.orphaned is True
    assert details.directory == manager.records.peer_dir("alice")
    assert details.private_key_file is None
    assert manager.list_peers().orphans == ["alice"]


def test_show_tolerates_empty_public_key(manager) -> None:
    manager.add("alice")
    manager.keys.public_key_path("alice").write_text("")

    details = manager.show("alice")

    assert details.public_key is None
    assert details.address == IP("10.100.0.2")
