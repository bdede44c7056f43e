import argparse
import logging
import os
import sys
from typing import List, Optional

from wg_peers.config import Settings
from wg_peers.endpoint import ConsolePrompter
from wg_peers.errors import AlreadyExistsError, PartialStateError, PeerManagerError
from wg_peers.log import setup_logging
from wg_peers.manager import PeerLifecycleManager
from wg_peers.wireguard import print_qr


logger = logging.getLogger("wg_peers.cli")

APPLY_HINT = "To apply changes, run: sudo nixos-rebuild switch"


def show_qr(conf: str) -> None:
    print()
    print("[*] QR Code for mobile import:")
    print_qr(conf, sys.stdout)
    print("[*] Scan this QR code with your WireGuard mobile app")


# ---------------------------------------------------
# Commande : add
# ---------------------------------------------------

def cmd_add(args, manager: PeerLifecycleManager) -> int:
    result = manager.add(args.name, args.address or None, args.endpoint or None)
    peer = result.peer

    print(f"[+] Peer '{peer.name}' added successfully")
    print(f"[+] Address        : {peer.address}")
    print(f"[+] Private key    : {manager.keys.private_key_path(peer.name)}")
    print(f"[+] Public key     : {manager.keys.public_key_path(peer.name)}")
    print(f"[+] Client config  : {peer.config_path}")
    print(f"[+] Server endpoint: {result.endpoint}")
    print(f"[!] {APPLY_HINT}")
    return 0


# ---------------------------------------------------
# Commandes : remove / clean
# ---------------------------------------------------

def _print_removal(report) -> None:
    for label, path in report.removed:
        print(f"[-] Removed {label.lower()}: {path}")


def cmd_remove(args, manager: PeerLifecycleManager) -> int:
    report = manager.remove(args.name)
    _print_removal(report)
    print(f"[OK] Peer '{args.name}' removed successfully")
    print(f"[!] {APPLY_HINT}")
    return 0


def cmd_clean(args, manager: PeerLifecycleManager) -> int:
    report = manager.clean(args.name)
    _print_removal(report)
    print(f"[OK] Cleaned orphaned files for peer '{args.name}'")
    print(f"[!] {APPLY_HINT}")
    return 0


# ---------------------------------------------------
# Commandes : list / show
# ---------------------------------------------------

def cmd_list(args, manager: PeerLifecycleManager) -> int:
    listing = manager.list_peers()

    print("=== Peers ===")
    if not listing.peers:
        print("No active peers configured.")
    for peer in listing.peers:
        flag = "  (no keys)" if peer.name in listing.orphans else ""
        print(f"{peer.name:<20} {peer.address}{flag}")

    print()
    print("=== Orphaned peers ===")
    if not listing.orphans:
        print("No orphaned keys found.")
    for name in listing.orphans:
        if manager.records.peer_dir(name).is_dir():
            print(f"{name:<20} (orphaned - no keys)")
        else:
            print(f"{name:<20} (orphaned - no config dir)")
    return 0


def cmd_show(args, manager: PeerLifecycleManager) -> int:
    details = manager.show(args.name)

    print(f"Peer: {details.name}")
    print("=" * (6 + len(details.name)))
    if details.address:
        print(f"IP: {details.address}")
    if details.public_key:
        print(f"Public Key: {details.public_key}")
    if details.private_key_file:
        print(f"Private Key File: {details.private_key_file}")
    if details.config_file:
        print(f"Config file: {details.config_file}")
    if details.orphaned:
        what = "peer directory without keys" if details.directory else "keys without a peer directory"
        print(f"[!] Orphaned: {what} (see 'clean {details.name}')")
    return 0


# ---------------------------------------------------
# Commande : endpoint
# ---------------------------------------------------

def cmd_endpoint(args, manager: PeerLifecycleManager) -> int:
    current = manager.endpoint_info()
    if current is None:
        print("No endpoint configured yet.")
        print("It will be set when you add your first peer.")
        return 0

    print(f"Current endpoint: {current}")
    if manager.endpoints.prompter.confirm("Update endpoint?", default=False):
        print(f"[+] Endpoint set to: {manager.reset_endpoint()}")
    return 0


# ---------------------------------------------------
# Commandes : qr / reconcile
# ---------------------------------------------------

def cmd_qr(args, manager: PeerLifecycleManager) -> int:
    conf = manager.qr(args.name)
    show_qr(conf)
    print(f"[*] Config file location: {manager.records.config_path(args.name)}")
    return 0


def cmd_reconcile(args, manager: PeerLifecycleManager) -> int:
    dropped = manager.reconcile_cache()
    if not dropped:
        print("[OK] Allocation cache already consistent.")
    for ip in dropped:
        print(f"[-] Released cached IP: {ip}")
    return 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wg-peers", description="WireGuard peer manager")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    # add
    p_add = sub.add_parser("add", help="add a new peer (IP auto-assigned if not given)")
    p_add.add_argument("name")
    p_add.add_argument("address", nargs="?", default="")
    p_add.add_argument("endpoint", nargs="?", default="", help="server public IP override")
    p_add.set_defaults(func=cmd_add)

    # remove
    p_rm = sub.add_parser("remove", help="remove an existing peer")
    p_rm.add_argument("name")
    p_rm.set_defaults(func=cmd_remove)

    # clean
    p_clean = sub.add_parser("clean", help="remove every trace of a peer, orphans included")
    p_clean.add_argument("name")
    p_clean.set_defaults(func=cmd_clean)

    # list
    p_list = sub.add_parser("list", help="list peers and orphaned keys")
    p_list.set_defaults(func=cmd_list)

    # show
    p_show = sub.add_parser("show", help="show details for a peer")
    p_show.add_argument("name")
    p_show.set_defaults(func=cmd_show)

    # endpoint
    p_ep = sub.add_parser("endpoint", help="show or update the server endpoint")
    p_ep.set_defaults(func=cmd_endpoint)

    # qr
    p_qr = sub.add_parser("qr", help="show the QR code of a peer config")
    p_qr.add_argument("name")
    p_qr.set_defaults(func=cmd_qr)

    # reconcile
    p_rec = sub.add_parser("reconcile", help="drop cached IPs not owned by any peer")
    p_rec.set_defaults(func=cmd_reconcile)

    return parser


def _build_manager() -> PeerLifecycleManager:
    settings = Settings.from_env()
    if settings.use_sudo and hasattr(os, "geteuid") and os.geteuid() == 0:
        raise PeerManagerError(
            "This tool should not be run as root; sudo is used only for key and peers file operations"
        )
    manager = PeerLifecycleManager.from_settings(settings, ConsolePrompter(), qr_printer=show_qr)
    manager.prepare()
    return manager


def main(argv: Optional[List[str]] = None, manager: Optional[PeerLifecycleManager] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    setup_logging(args.verbose)

    try:
        if manager is None:
            manager = _build_manager()
        return args.func(args, manager)
    except (AlreadyExistsError, PartialStateError) as exc:
        logger.error(str(exc))
        for line in exc.details():
            logger.info("  %s", line)
        return 1
    except PeerManagerError as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
