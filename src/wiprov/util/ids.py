from __future__ import annotations

"""ID generation and validation.

CONTRACT
- Inputs: Run IDs, step names
- Outputs (required):
  - new_run_id() returns time-sortable string
  - new_resource_suffix() returns 6 lowercase hex chars
  - validate_run_id() / validate_step_name() return the validated value or raise
- Invariants:
  - Run IDs match `[A-Za-z0-9][A-Za-z0-9_.-]{0,63}`
  - Step names match `[a-z0-9][a-z0-9-]{0,63}`
- Failure:
  - Raises ValueError on invalid IDs
"""

import datetime
import random
import re
import secrets
import string

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_STEP_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")


def new_run_id() -> str:
    # YYYYMMDD_HHMMSS_<rand4>
    ts = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d_%H%M%S")
    suffix = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(4))
    return f"{ts}_{suffix}"


def new_resource_suffix() -> str:
    """Random suffix appended to every resource name (same shape as `openssl rand -hex 3`)."""
    return secrets.token_hex(3)


def validate_run_id(run_id: str) -> str:
    if not _RUN_ID_RE.fullmatch(run_id):
        raise ValueError(
            "Invalid run id. Use 1-64 chars: letters/digits, plus '._-'. Must start with a letter "
            "or digit."
        )
    return run_id


def validate_step_name(name: str) -> str:
    if not _STEP_NAME_RE.fullmatch(name):
        raise ValueError(
            f"Invalid step name {name!r}. Use 1-64 chars: lowercase letters/digits, plus '-'. "
            "Must start with a letter or digit."
        )
    return name


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Utilities for run IDs and resource suffixes")
    parser.add_argument("--new-run-id", action="store_true", help="Generate a new run ID")
    parser.add_argument("--new-suffix", action="store_true", help="Generate a resource name suffix")
    parser.add_argument("--validate-run-id", help="Validate a run ID (returns it or fails)")
    args = parser.parse_args()

    try:
        if args.new_run_id:
            print(new_run_id())
        elif args.new_suffix:
            print(new_resource_suffix())
        elif args.validate_run_id:
            print(validate_run_id(args.validate_run_id))
        else:
            parser.print_help()
            sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
