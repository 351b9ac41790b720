from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from salewatch.config import repo_root


def fixture_dir(provider: str) -> Path:
    return repo_root() / "tests" / "fixtures" / provider


def load_fixture(base_dir: Path, name: str) -> Any:
    """Read a recorded upstream payload captured for offline runs."""
    path = Path(base_dir) / name
    if not path.is_file():
        raise FileNotFoundError(f"fixture {name} not found under {base_dir}")
    return json.loads(path.read_text(encoding="utf-8"))


__all__ = ["fixture_dir", "load_fixture"]
