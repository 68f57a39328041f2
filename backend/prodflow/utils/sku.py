from __future__ import annotations

import re
from typing import Any, Optional

# \s covers Unicode spaces in Python 3 (U+00A0, U+2007, U+202F, ...).
_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_sku(raw: Any) -> Optional[str]:
    """Canonical merge key for a SKU.

    Trims both ends and collapses every internal whitespace run (non-breaking
    spaces included) into one ASCII space. Case is preserved. Returns ``None``
    for missing or blank values.
    """

    if raw is None:
        return None
    text = _WHITESPACE_RUN.sub(" ", str(raw)).strip()
    return text or None
