"""Test vector fingerprinting.

Vectors are generated once under the baseline tree and must reach the
candidate measurement byte-for-byte unchanged. The fingerprint is taken with
the same executor that runs the tools so it works for local and remote work
trees alike.
"""

from __future__ import annotations

import hashlib
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .executor import Executor


@dataclass(frozen=True)
class VectorFingerprint:
    """Per-file digests of a test vector directory."""

    files: dict[str, str] = field(default_factory=dict)

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def digest(self) -> str:
        """Single sha256 over the sorted per-file digests."""
        hasher = hashlib.sha256()
        for path in sorted(self.files):
            hasher.update(f"{self.files[path]}  {path}\n".encode())
        return hasher.hexdigest()

    def changed_files(self, other: VectorFingerprint) -> list[str]:
        """List files added, removed or modified between two fingerprints.

        Returns:
            Sorted relative paths that differ.
        """
        paths = set(self.files) | set(other.files)
        return sorted(p for p in paths if self.files.get(p) != other.files.get(p))

    @classmethod
    def parse(cls, sha256sum_output: str) -> VectorFingerprint:
        """Build a fingerprint from ``sha256sum`` output lines.

        Returns:
            The parsed fingerprint.
        """
        files = {}
        for line in sha256sum_output.splitlines():
            digest, sep, path = line.partition("  ")
            if not sep:
                continue
            files[path.removeprefix("./")] = digest.strip()
        return cls(files)


def fingerprint_vectors(executor: Executor, vectors_dir: str) -> VectorFingerprint:
    """Hash every file under the vector directory.

    A missing directory yields an empty fingerprint.

    Returns:
        The fingerprint of the directory contents.
    """
    script = (
        f"[ -d {shlex.quote(vectors_dir)} ] || exit 0; "
        f"cd {shlex.quote(vectors_dir)} && "
        "find . -type f -print0 | LC_ALL=C sort -z | xargs -0 -r sha256sum"
    )
    result = executor.run(["sh", "-c", script], stream=False)
    return VectorFingerprint.parse(result.output)
