from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

ENV_FILE_VAR = "BUNDLE_INTEGRITY_ENV_FILE"
PROJECT_ROOT = Path(__file__).resolve().parents[2]


def dotenv_candidates(root: Path = PROJECT_ROOT) -> List[Path]:
    """An explicit BUNDLE_INTEGRITY_ENV_FILE wins; otherwise the repo `.env`."""
    explicit = str(os.environ.get(ENV_FILE_VAR) or "").strip()
    if explicit:
        return [Path(explicit).expanduser()]
    return [root / ".env"]


def load_project_dotenv(candidates: Optional[Sequence[Path]] = None) -> List[Path]:
    """
    Copy `.env` values into `os.environ` without overriding what is already set.

    Settings reads `.env` on its own, but the Supabase client factory reads
    SUPABASE_URL / SUPABASE_KEY from the environment. Returns the files loaded.
    """
    loaded: List[Path] = []
    for path in candidates if candidates is not None else dotenv_candidates():
        if path.is_file() and load_dotenv(path, override=False):
            loaded.append(path)
    return loaded
