from __future__ import annotations

"""Template initializer.

CONTRACT
- Inputs: Workdir path
- Outputs (required):
  - Writes .wiprov/provision.yaml
- Invariants:
  - Creates .wiprov directory if missing
  - Does not overwrite existing files (by default)
- Failure:
  - Raises OSError on permission issues
"""

from pathlib import Path

from .util.paths import copy_template, ensure_dir


def write_templates(workdir: Path, force: bool = False) -> list[Path]:
    cfg_dir = workdir / ".wiprov"
    ensure_dir(cfg_dir)

    written = []
    dest = cfg_dir / "provision.yaml"
    if copy_template("provision.yaml", dest, overwrite=force):
        written.append(dest)
    return written
