"""Install generated files into system locations."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..templates import write_if_changed
from .process import run_command


class FileInstallError(RuntimeError):
    """Raised when a file cannot be installed, linked or removed."""


@dataclass(slots=True)
class FileInstaller:
    """Write files directly when permitted, otherwise through ``install(1)``.

    ``elevate`` is the privilege prefix (see ``elevation_prefix``). An empty
    prefix means every operation is attempted with the current identity.
    """

    elevate: tuple[str, ...] = ()
    install_bin: str = "install"

    def install(self, content: str, destination: Path, *, mode: int = 0o644) -> bool:
        """Place *content* at *destination*; return ``True`` when it changed."""
        destination = Path(destination)
        if self._is_current(destination, content, mode):
            return False
        if not self.elevate or _writable(destination.parent):
            try:
                return write_if_changed(destination, content, mode=mode)
            except OSError as exc:
                if not self.elevate:
                    raise FileInstallError(f"Failed to write {destination}: {exc}") from exc

        fd, tmp_name = tempfile.mkstemp(prefix=f".stackctl-{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            run_command(
                [
                    *self.elevate,
                    self.install_bin,
                    "-D",
                    "-m",
                    f"{mode:o}",
                    str(tmp_path),
                    str(destination),
                ],
                error=FileInstallError,
                error_prefix=f"install {destination}",
            )
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def symlink(self, target: Path, link: Path) -> bool:
        """Point *link* at *target*; return ``True`` when the link changed."""
        link = Path(link)
        if link.is_symlink() and Path(os.readlink(link)) == Path(target):
            return False
        if not self.elevate or _writable(link.parent):
            link.parent.mkdir(parents=True, exist_ok=True)
            temp_link = link.with_name(f".{link.name}.tmp")
            temp_link.unlink(missing_ok=True)
            temp_link.symlink_to(target)
            os.replace(temp_link, link)
            return True
        run_command(
            [*self.elevate, "ln", "-sfn", str(target), str(link)],
            error=FileInstallError,
            error_prefix=f"ln {link}",
        )
        return True

    def remove(self, path: Path) -> bool:
        """Delete *path* if present; return ``True`` when something was removed."""
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return False
        if not self.elevate or _writable(path.parent):
            path.unlink(missing_ok=True)
            return True
        run_command(
            [*self.elevate, "rm", "-f", str(path)],
            error=FileInstallError,
            error_prefix=f"rm {path}",
        )
        return True

    def read_bytes(self, path: Path) -> bytes:
        """Return the content of *path*, elevating when it is not readable."""
        path = Path(path)
        try:
            return path.read_bytes()
        except PermissionError:
            if not self.elevate:
                raise
        result = run_command(
            [*self.elevate, "cat", str(path)],
            error=FileInstallError,
            error_prefix=f"read {path}",
            text=False,
        )
        return bytes(result.stdout)

    def _is_current(self, destination: Path, content: str, mode: int) -> bool:
        try:
            if destination.stat().st_mode & 0o777 != mode:
                return False
            return destination.read_text(encoding="utf-8") == content
        except OSError:
            return False


def _writable(directory: Path) -> bool:
    candidate = Path(directory)
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return os.access(candidate, os.W_OK)


__all__ = ["FileInstallError", "FileInstaller"]
