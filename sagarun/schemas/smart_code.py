"""
Smart code grammar.

Smart codes identify both orchestration specs and runnable procedures:

    DOMAIN.AREA.FEATURE.v1
    HERA.SALON.POS.ADD_LINE.v1

At least two dotted segments followed by a version suffix, matched
case-insensitively. Lookups normalize to upper case with a ``.V<n>`` suffix.
"""

import re

SMART_CODE_PATTERN = re.compile(r"^[A-Z0-9_]+(\.[A-Z0-9_]+)+\.V[0-9]+$", re.IGNORECASE)

_VERSION_SUFFIX = re.compile(r"\.V(\d+)$", re.IGNORECASE)


def is_valid_smart_code(code: object) -> bool:
    """Return True if ``code`` is a string matching the smart code grammar."""
    return isinstance(code, str) and SMART_CODE_PATTERN.fullmatch(code) is not None


def normalize_smart_code(code: str) -> str:
    """
    Normalize a smart code for lookup.

    >>> normalize_smart_code("hera.salon.pos.add_line.v1")
    'HERA.SALON.POS.ADD_LINE.V1'
    """
    return _VERSION_SUFFIX.sub(r".V\1", code.strip().upper())

