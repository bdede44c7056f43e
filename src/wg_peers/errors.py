# src/wg_peers/errors.py
from __future__ import annotations
from pathlib import Path
from typing import List, Optional, Tuple


Artifact = Tuple[str, Path]


class PeerManagerError(Exception):
    """Base de toutes les erreurs remontées à l'opérateur."""


class _TracedError(PeerManagerError):
    """Erreur qui énumère les artefacts trouvés sur disque."""

    def __init__(self, message: str, artifacts: Optional[List[Artifact]] = None):
        self.artifacts = list(artifacts or [])
        super().__init__(message)

    def details(self) -> List[str]:
        return [f"{label}: {path}" for label, path in self.artifacts]


class AlreadyExistsError(_TracedError):
    pass


class NotFoundError(PeerManagerError):
    pass


class PartialStateError(_TracedError):
    pass


class PoolExhaustedError(PeerManagerError):
    pass


class InvalidAddressError(PeerManagerError, ValueError):
    pass


class AddressInUseError(InvalidAddressError):
    pass


class InvalidNameError(PeerManagerError, ValueError):
    pass


class MissingDependencyError(PeerManagerError):
    pass


class PrivilegeError(PeerManagerError, PermissionError):
    pass


class StateLockedError(PeerManagerError):
    pass


class ExternalToolError(PeerManagerError):
    pass
