import re
from typing import Optional
import bleach


def sanitize_input(value: Optional[str]) -> str:
    """Clean a free-text field (user or product name) before storing it.

    - Removes NULL bytes and turns control characters into spaces, before
      bleach sees them (bleach would otherwise replace them with '?')
    - Strips HTML tags using bleach.clean(..., strip=True)
    - Collapses runs of whitespace and trims
    """
    if value is None:
        return ""
    val = value.replace("\x00", "")
    val = re.sub(r"[\x01-\x1f\x7f]", " ", val)
    val = bleach.clean(val, tags=[], strip=True)
    return re.sub(r"\s+", " ", val).strip()
