from __future__ import annotations

from pathlib import Path

import yaml


def load_redaction_patterns(path: Path | None) -> list[str]:
    if path is None:
        return []
    if not path.exists():
        # Fail-closed: a configured policy must exist.
        raise FileNotFoundError(f"Missing redaction policy: {path}")
    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ValueError(f"{path.name} must be a mapping")
    pats = doc.get("patterns")
    if not isinstance(pats, list) or not all(isinstance(x, str) for x in pats):
        raise ValueError(f"{path.name} must contain patterns: [regex...]")
    return list(pats)
