# src/wg_peers/endpoint.py
from __future__ import annotations
import ipaddress
import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

import httpx

from .errors import InvalidAddressError
from .fileio import atomic_write_text


logger = logging.getLogger(__name__)

DEFAULT_PROBE_URLS = [
    "https://icanhazip.com",
    "https://ipinfo.io/ip",
    "https://api.ipify.org",
]


def is_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True


# ---------- Interaction ----------

class Prompter(Protocol):
    def confirm(self, question: str, default: bool = True) -> bool: ...

    def ask(self, question: str) -> str: ...


class ConsolePrompter:
    """Questions sur stderr, réponses sur stdin (stdout reste propre)."""

    def confirm(self, question: str, default: bool = True) -> bool:
        suffix = "[Y/n]" if default else "[y/N]"
        answer = self.ask(f"{question} {suffix}: ").strip().lower()
        if not answer:
            return default
        return answer in ("y", "yes")

    def ask(self, question: str) -> str:
        print(question, end="", file=sys.stderr, flush=True)
        line = sys.stdin.readline()
        return line.strip()


# ---------- Détection de l'IP publique ----------

PublicIPProbe = Callable[[float], Optional[str]]


def http_probe(url: str) -> PublicIPProbe:
    def probe(timeout: float) -> Optional[str]:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text
    probe.__name__ = f"http_probe({url})"
    return probe


def dig_probe(timeout: float) -> Optional[str]:
    dig = shutil.which("dig")
    if dig is None:
        return None
    out = subprocess.run(
        [dig, "+short", "myip.opendns.com", "@resolver1.opendns.com"],
        capture_output=True, text=True, check=True, timeout=timeout,
    )
    return out.stdout


DEFAULT_PROBES: List[PublicIPProbe] = [http_probe(url) for url in DEFAULT_PROBE_URLS] + [dig_probe]


def detect_public_ip(probes: Sequence[PublicIPProbe], timeout: float) -> Optional[str]:
    """
    Essaie chaque méthode dans l'ordre ; la première IPv4 valide gagne.
    Une méthode en échec passe simplement à la suivante.
    """
    for probe in probes:
        name = getattr(probe, "__name__", repr(probe))
        try:
            raw = probe(timeout)
        except (httpx.HTTPError, OSError, subprocess.SubprocessError) as exc:
            logger.debug("Probe %s failed: %s", name, exc)
            continue
        candidate = (raw or "").strip().splitlines()
        if candidate and is_ipv4(candidate[0].strip()):
            return candidate[0].strip()
        logger.debug("Probe %s returned no usable IPv4", name)
    return None


# ---------- Persistance ----------

class EndpointStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[str]:
        if not self.path.is_file():
            return None
        value = self.path.read_text(encoding="utf-8").strip()
        return value or None

    def save(self, endpoint: str) -> None:
        atomic_write_text(self.path, endpoint + "\n", 0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


# ---------- Résolution ----------

class EndpointResolver:
    """
    Unset -> Detecting -> {Confirmed, ManualEntry} -> Persisted.
    Un override écrase toujours l'endpoint sauvegardé.
    """

    def __init__(
        self,
        store: EndpointStore,
        port: int,
        prompter: Prompter,
        probes: Sequence[PublicIPProbe] = DEFAULT_PROBES,
        probe_timeout: float = 5.0,
    ):
        self.store = store
        self.port = port
        self.prompter = prompter
        self.probes = list(probes)
        self.probe_timeout = probe_timeout

    def current(self) -> Optional[str]:
        return self.store.load()

    def clear(self) -> None:
        self.store.clear()

    def resolve(self, override: Optional[str] = None) -> str:
        if override and override.strip():
            endpoint = f"{override.strip()}:{self.port}"
            self.store.save(endpoint)
            return endpoint

        saved = self.store.load()
        if saved:
            if self.prompter.confirm(f"Use saved endpoint '{saved}'?", default=True):
                return saved
            self.store.clear()

        endpoint = f"{self._detect_or_ask()}:{self.port}"
        self.store.save(endpoint)
        logger.info("Endpoint set to: %s", endpoint)
        return endpoint

    def _detect_or_ask(self) -> str:
        logger.info("Detecting server public IP...")
        detected = detect_public_ip(self.probes, self.probe_timeout)

        if detected is None:
            logger.warning("Could not auto-detect public IP")
            return self._ask_manual()

        logger.info("Detected public IP: %s", detected)
        if self.prompter.confirm(f"Use detected IP '{detected}'?", default=True):
            return detected
        return self._ask_manual()

    def _ask_manual(self) -> str:
        answer = self.prompter.ask("Please enter your server's public IP address: ").strip()
        if not is_ipv4(answer):
            raise InvalidAddressError(f"Invalid IP address format: '{answer}'")
        return answer
