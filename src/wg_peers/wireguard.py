# src/wg_peers/wireguard.py
from __future__ import annotations
import io
import ipaddress
from typing import List, Optional, TextIO

from .errors import MissingDependencyError


# ---------- Rendu des configs ----------

def render_client_conf(
    private_key: str,
    address: ipaddress.IPv4Address,
    prefixlen: int,
    server_public_key: str,
    endpoint: str,
    dns: Optional[List[str]] = None,
    keepalive: int = 25,
) -> str:
    lines = [
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {address}/{prefixlen}",
    ]

    if dns:
        lines.append(f"DNS = {', '.join(dns)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
        f"Endpoint = {endpoint}",
        # Tout le trafic passe par le tunnel
        "AllowedIPs = 0.0.0.0/0",
        # On force le keepalive si on veut du roaming téléphone
        f"PersistentKeepalive = {keepalive}",
    ]

    return "\n".join(lines).strip() + "\n"


# ---------- QR code ----------

def render_qr(conf: str) -> str:
    """QR code affichable dans un terminal, pour l'import depuis l'app mobile."""
    try:
        import qrcode
    except ImportError as exc:
        raise MissingDependencyError(
            "qrcode is not installed (pip install qrcode) - the config file is still available"
        ) from exc

    qr = qrcode.QRCode(border=1)
    qr.add_data(conf)
    qr.make(fit=True)

    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


def print_qr(conf: str, stream: TextIO) -> None:
    stream.write(render_qr(conf))
    stream.flush()
