from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

from .util import sha256_file

HEAD = "HEAD"


def sanitize(ref: str) -> str:
    """Return a filename-friendly version of a git ref."""
    return ref.replace("/", "_")


def artifact_name(crate: str, revision: str = HEAD) -> str:
    return f"{crate}@{sanitize(revision)}.wasm"


def artifact_path(output_dir: Path, crate: str, revision: str = HEAD) -> Path:
    return Path(output_dir) / artifact_name(crate, revision)


@dataclass(frozen=True)
class CompiledArtifact:
    code_path: str
    code_hash: str

    @classmethod
    def from_path(cls, path: Path) -> "CompiledArtifact":
        path = Path(path).resolve()
        return cls(code_path=path.as_uri(), code_hash=sha256_file(path))

    @property
    def path(self) -> Path:
        return Path(url2pathname(urlparse(self.code_path).path))

    def as_dict(self) -> dict[str, str]:
        return {"code_path": self.code_path, "code_hash": self.code_hash}


@dataclass(frozen=True)
class ArtifactCache:
    """Lookup of previously compiled artifacts in the output directory.

    The hash is recomputed from the file on every hit, so an artifact that was
    replaced out of band is never reported with a stale digest.
    """

    enabled: bool = True

    def get(self, output_dir: Path, crate: str, revision: str = HEAD) -> CompiledArtifact | None:
        if not self.enabled or not crate:
            return None
        location = artifact_path(output_dir, crate, revision)
        if not location.is_file():
            return None
        return CompiledArtifact.from_path(location)
