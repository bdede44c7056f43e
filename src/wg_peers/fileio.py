# src/wg_peers/fileio.py
from __future__ import annotations
import errno
import fcntl
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StateLockedError


def atomic_write_text(path: Path, content: str, mode: int = 0o600) -> Path:
    """
    Écrit `content` dans `path` sans jamais exposer un fichier à moitié écrit :
    fichier temporaire dans le même dossier, fsync, puis rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return path


@contextmanager
def state_lock(path: Path) -> Iterator[None]:
    """
    Verrou exclusif inter-processus autour d'une opération qui modifie l'état.
    Non bloquant : une deuxième invocation échoue tout de suite.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("a") as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno in (errno.EAGAIN, errno.EACCES):
                raise StateLockedError(
                    f"Another wg-peers command is running (lock held on {path})"
                ) from exc
            raise
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
