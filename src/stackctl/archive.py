"""Tar archive helpers used by backups and restores."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when tar cannot create or extract an archive."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(requested: str) -> str:
    """Turn ``auto`` into a concrete algorithm available on this host."""
    if requested == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    return requested


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def create_archive(
    sources: Sequence[Path],
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
    *,
    exclude: Iterable[str] = (),
) -> None:
    """Archive every existing path in *sources* under its own base name."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    cmd: list[str] = [tar_bin]
    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])
    for pattern in exclude:
        cmd.append(f"--exclude={pattern}")

    members = 0
    for source in sources:
        resolved = Path(source).resolve()
        if not resolved.exists():
            continue
        cmd.extend(["-C", str(resolved.parent), resolved.name])
        members += 1
    if members == 0:
        raise ArchiveError("Nothing to archive: none of the source paths exist.")

    _run_tar(cmd, env)
    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract *archive_path* into *destination* (compression auto-detected)."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to extract archives.")
    destination.mkdir(parents=True, exist_ok=True)
    cmd = [tar_bin]
    if archive_path.name.endswith(".tar.zst"):
        cmd.append("--zstd")
    cmd.extend(["-xf", str(archive_path), "-C", str(destination)])
    _run_tar(cmd, os.environ.copy())


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(path: Path, checksum: str) -> Path:
    """Write ``<file>.sha256`` and return the checksum path."""
    checksum_path = path.with_name(f"{path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def _run_tar(cmd: list[str], env: dict[str, str]) -> None:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())


__all__ = [
    "ArchiveError",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "extract_archive",
    "resolve_algorithm",
    "write_checksum_file",
]
