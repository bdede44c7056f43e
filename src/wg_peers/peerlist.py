# src/wg_peers/peerlist.py
from __future__ import annotations
import ipaddress
import re
from typing import Iterable, List

from .models import PeerListEntry


HEADER = (
    "# Auto-generated WireGuard peers configuration\n"
    "# Managed by wg-peers, do not edit by hand\n"
)

ENTRY_TEMPLATE = """  {{ # {name}
    publicKey = "{public_key}";
    allowedIPs = [ "{address}/32" ];
  }}
"""

ALLOWED_IPS_RE = re.compile(r'allowedIPs\s*=\s*\[\s*"([0-9.]+)/32"')


def render_peer_list(entries: Iterable[PeerListEntry]) -> str:
    """Liste Nix importée par modules/wireguard.nix (networking.wireguard...peers)."""
    body = "".join(
        ENTRY_TEMPLATE.format(name=e.name, public_key=e.public_key, address=e.address)
        for e in entries
    )
    return f"{HEADER}[\n{body}]\n"


def parse_peer_list_addresses(text: str) -> List[ipaddress.IPv4Address]:
    found = []
    for match in ALLOWED_IPS_RE.finditer(text):
        try:
            found.append(ipaddress.IPv4Address(match.group(1)))
        except ValueError:
            continue
    return found
