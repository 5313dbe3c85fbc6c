from __future__ import annotations

"""Redaction utility.

CONTRACT
- Inputs: text strings, output mappings
- Outputs:
  - redacted text string / mapping
- Invariants:
  - Replaces PEM blocks, SAS signatures and bearer tokens with [REDACTED]
  - redact_values() masks every value whose key is marked sensitive
  - Best-effort; does not guarantee all secrets are caught
- Failure:
  - None (returns original text when nothing matches)
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

REDACTED = "[REDACTED]"

DEFAULT_PATTERNS = [
    re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL),
    re.compile(r"(?i)\bsig=[A-Za-z0-9%+/=]{16,}"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{20,}"),
    re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]+"),
]


@dataclass(frozen=True)
class Redactor:
    patterns: list[re.Pattern] = field(default_factory=lambda: list(DEFAULT_PATTERNS))

    def redact(self, text: str) -> str:
        out = text
        for pat in self.patterns:
            out = pat.sub(REDACTED, out)
        return out

    def redact_values(self, values: Mapping[str, str], sensitive: Iterable[str]) -> dict[str, str]:
        hidden = set(sensitive)
        return {k: (REDACTED if k in hidden else self.redact(v)) for k, v in values.items()}
