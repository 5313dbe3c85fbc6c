from __future__ import annotations

"""Path utilities.

CONTRACT
- Inputs: strings (filenames) or paths
- Outputs:
  - ensure_dir() creates directory tree
  - copy_template() writes bundled resource to dest
  - read_template() returns bundled resource text
- Invariants:
  - copy_template never overwrites existing files (unless `overwrite=True`)
- Failure:
  - copy_template/read_template raise if resource missing
"""

import importlib.resources
from pathlib import Path

from .. import templates


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def read_template(template_name: str) -> str:
    return importlib.resources.files(templates).joinpath(template_name).read_text(encoding="utf-8")


def copy_template(template_name: str, dest: Path, overwrite: bool = False) -> bool:
    # Only write if missing (avoid clobber) unless forced.
    if dest.exists() and not overwrite:
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(read_template(template_name), encoding="utf-8")
    return True
