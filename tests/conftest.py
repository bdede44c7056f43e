"""Shared fixtures: isolated settings under tmp_path, fake keys, scripted prompts."""

from __future__ import annotations

from typing import List, Optional

import pytest

from wg_peers.config import Settings
from wg_peers.manager import PeerLifecycleManager
from wg_peers.models import KeyPair
from wg_peers.privileged import LocalFileAccess

DETECTED_IP = "198.51.100.7"


class FakeKeyGenerator:
    """Deterministic keys: priv-1/pub-priv-1, priv-2/pub-priv-2, ..."""

    def __init__(self) -> None:
        self.counter = 0

    def generate_keypair(self) -> KeyPair:
        self.counter += 1
        private_key = f"priv-{self.counter}"
        return KeyPair(private_key=private_key, public_key=self.public_key(private_key))

    def public_key(self, private_key: str) -> str:
        return f"pub-{private_key.strip()}"


class ScriptedPrompter:
    """Answers from queues; falls back to the default answer when a queue is empty."""

    def __init__(self, confirms: Optional[List[bool]] = None, answers: Optional[List[str]] = None):
        self.confirms = list(confirms or [])
        self.answers = list(answers or [])
        self.questions: List[str] = []

    def confirm(self, question: str, default: bool = True) -> bool:
        self.questions.append(question)
        return self.confirms.pop(0) if self.confirms else default

    def ask(self, question: str) -> str:
        self.questions.append(question)
        return self.answers.pop(0) if self.answers else ""


def fixed_probe(ip: str):
    def probe(timeout: float) -> str:
        return ip + "\n"
    return probe


@pytest.fixture
def settings(tmp_path) -> Settings:
    nixos = tmp_path / "nixos"
    s = Settings(
        wg_dir=tmp_path / "wg",
        peers_file=nixos / "modules" / "wg-peers.nix",
        secrets_dir=nixos / "secrets" / "wg-clients",
        server_private_key_file=nixos / "secrets" / "wg-private",
        use_sudo=False,
    )
    s.server_private_key_file.parent.mkdir(parents=True)
    s.server_private_key_file.write_text("server-priv\n")
    return s


@pytest.fixture
def prompter() -> ScriptedPrompter:
    return ScriptedPrompter()


@pytest.fixture
def make_manager(settings, prompter):
    def factory(
        probes=(fixed_probe(DETECTED_IP),),
        qr_printer=None,
        settings=settings,
        prompter=prompter,
        access=None,
    ) -> PeerLifecycleManager:
        manager = PeerLifecycleManager.from_settings(
            settings,
            prompter,
            access=access or LocalFileAccess(),
            generator=FakeKeyGenerator(),
            probes=list(probes),
            live_interface=False,
            qr_printer=qr_printer,
        )
        manager.prepare()
        return manager

    return factory


@pytest.fixture
def manager(make_manager) -> PeerLifecycleManager:
    return make_manager()
