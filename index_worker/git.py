import hashlib
import re
import subprocess
from pathlib import Path

MAX_FILE_BYTES = 500 * 1024  # 500 KB
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}

_UNKNOWN_REVISION = re.compile(
    r"not a valid object name|not a tree object|unknown revision|bad revision", re.IGNORECASE
)


class GitError(RuntimeError):
    pass


class RevisionNotFoundError(GitError):
    pass


def repo_path(repos_root: str, uri: str) -> str:
    """Location of the bare clone for ``uri`` under ``repos_root``."""
    return str(Path(repos_root) / uri.strip("/"))


def _ls_tree(repo_path: str, ref: str, *args: str) -> str:
    result = subprocess.run(
        ["git", "--git-dir", repo_path, "ls-tree", "-r", *args, ref],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        stderr = result.stderr.strip()
        if _UNKNOWN_REVISION.search(stderr):
            raise RevisionNotFoundError(f"revision '{ref}' not found in {repo_path}: {stderr}")
        raise GitError(f"git ls-tree failed: {stderr}")
    return result.stdout


def count_files(repo_path: str, ref: str) -> int:
    """Total number of files in the tree at ``ref``, unfiltered."""
    return sum(1 for line in _ls_tree(repo_path, ref, "--name-only").splitlines() if line)


def list_files(repo_path: str, sha: str) -> list[str]:
    """List indexable files at the given commit SHA in a bare clone.

    Filters out hidden files/dirs and SKIP_DIRS, and files larger than MAX_FILE_BYTES.
    """
    # -l outputs lines like: <mode> <type> <object> <size>\t<path>
    files = []
    for line in _ls_tree(repo_path, sha, "-l").splitlines():
        try:
            meta, path = line.split("\t", 1)
        except ValueError:
            continue
        parts = path.split("/")
        if any(p.startswith(".") or p in SKIP_DIRS for p in parts):
            continue
        # Submodule entries report "-" as size
        try:
            size = int(meta.split()[3])
        except (IndexError, ValueError):
            continue
        if size > MAX_FILE_BYTES:
            continue
        files.append(path)

    return files


def read_file_bytes(repo_path: str, sha: str, file_path: str) -> bytes | None:
    """Raw bytes of a file at ``sha``, or None if it cannot be read."""
    result = subprocess.run(
        ["git", "--git-dir", repo_path, "show", f"{sha}:{file_path}"],
        capture_output=True,
    )
    if result.returncode != 0:
        return None
    return result.stdout


def hash_file_content(content: bytes) -> str:
    """SHA-256 of file content bytes."""
    return hashlib.sha256(content).hexdigest()
