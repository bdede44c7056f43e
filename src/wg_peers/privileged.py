# src/wg_peers/privileged.py
from __future__ import annotations
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .errors import MissingDependencyError, PrivilegeError
from .fileio import atomic_write_text


SUDO_TIMEOUT = 60


class PrivilegedFileAccess(ABC):
    """
    Accès aux fichiers root (clés, fichier de peers).
    Le reste du code ne sait pas si on passe par sudo ou non.
    """

    @abstractmethod
    def exists(self, path: Path) -> bool: ...

    @abstractmethod
    def read_text(self, path: Path) -> str: ...

    @abstractmethod
    def write_text(self, path: Path, content: str, mode: int = 0o600) -> None: ...

    @abstractmethod
    def remove(self, path: Path) -> bool: ...

    @abstractmethod
    def makedirs(self, path: Path, mode: int = 0o700) -> None: ...

    @abstractmethod
    def list_files(self, path: Path) -> List[str]: ...


class LocalFileAccess(PrivilegedFileAccess):
    """Accès direct, avec les droits du processus courant."""

    def exists(self, path: Path) -> bool:
        try:
            os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot access {path}: {exc.strerror}") from exc
        return True

    def read_text(self, path: Path) -> str:
        try:
            return Path(path).read_text(encoding="utf-8")
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot read {path}: {exc.strerror}") from exc

    def write_text(self, path: Path, content: str, mode: int = 0o600) -> None:
        try:
            atomic_write_text(Path(path), content, mode)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot write {path}: {exc.strerror}") from exc

    def remove(self, path: Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot remove {path}: {exc.strerror}") from exc
        return True

    def makedirs(self, path: Path, mode: int = 0o700) -> None:
        path = Path(path)
        try:
            if not path.is_dir():
                path.mkdir(parents=True, exist_ok=True)
                path.chmod(mode)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot create {path}: {exc.strerror}") from exc

    def list_files(self, path: Path) -> List[str]:
        try:
            with os.scandir(path) as entries:
                return [entry.name for entry in entries if entry.is_file()]
        except (FileNotFoundError, NotADirectoryError):
            return []
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot list {path}: {exc.strerror}") from exc


class SudoFileAccess(LocalFileAccess):
    """
    Essaie d'abord l'accès direct, puis retombe sur sudo(8)
    quand le fichier appartient à root.
    """

    def _sudo(self, args: List[str], input: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["sudo", *args],
                input=input,
                capture_output=True,
                text=True,
                check=check,
                timeout=SUDO_TIMEOUT,
            )
        except FileNotFoundError as exc:
            raise MissingDependencyError("sudo is required to access root-owned files") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise PrivilegeError(f"sudo {' '.join(args)} failed: {stderr or exc.returncode}") from exc
        except subprocess.TimeoutExpired as exc:
            raise PrivilegeError(f"sudo {' '.join(args)} timed out") from exc

    def exists(self, path: Path) -> bool:
        try:
            return super().exists(path)
        except PrivilegeError:
            return self._sudo(["test", "-e", str(path)], check=False).returncode == 0

    def read_text(self, path: Path) -> str:
        try:
            return super().read_text(path)
        except PrivilegeError:
            return self._sudo(["cat", str(path)]).stdout

    def write_text(self, path: Path, content: str, mode: int = 0o600) -> None:
        try:
            super().write_text(path, content, mode)
            return
        except PrivilegeError:
            pass

        # Copie dans le dossier cible puis rename : même garantie atomique qu'en direct
        path = Path(path)
        staged = path.parent / f".{path.name}.tmp"
        fd, local_tmp = tempfile.mkstemp(prefix="wg-peers-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            self._sudo(["mkdir", "-p", str(path.parent)])
            self._sudo(["install", "-m", format(mode, "o"), local_tmp, str(staged)])
            self._sudo(["mv", "-f", str(staged), str(path)])
        finally:
            os.unlink(local_tmp)

    def remove(self, path: Path) -> bool:
        try:
            return super().remove(path)
        except PrivilegeError:
            if not self.exists(path):
                return False
            self._sudo(["rm", "-f", str(path)])
            return True

    def makedirs(self, path: Path, mode: int = 0o700) -> None:
        try:
            super().makedirs(path, mode)
        except PrivilegeError:
            self._sudo(["mkdir", "-p", str(path)])
            self._sudo(["chmod", format(mode, "o"), str(path)])

    def list_files(self, path: Path) -> List[str]:
        try:
            return super().list_files(path)
        except PrivilegeError:
            out = self._sudo(
                ["find", str(path), "-maxdepth", "1", "-type", "f", "-printf", "%f\\n"]
            ).stdout
            return [line for line in out.splitlines() if line]
