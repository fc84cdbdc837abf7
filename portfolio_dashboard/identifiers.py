"""Security identifier normalization and identity keys."""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def normalize(security_id: Optional[str]) -> str:
    """Canonicalize a security identifier (ISIN, ticker) for comparison.

    Returns an empty string for None or blank input, otherwise the
    trimmed, upper-cased identifier.
    """
    if security_id is None:
        return ""
    return str(security_id).strip().upper()


def name_key(display_name: Optional[str]) -> str:
    """Normalize a display name into a lookup key (trimmed, lower-cased)."""
    if display_name is None:
        return ""
    return str(display_name).strip().lower()


def identity_key(security_id: Optional[str], display_name: Optional[str] = None) -> str:
    """Key used to join records across sources.

    The normalized security id when there is one, else the normalized
    display name. Empty when neither is available.
    """
    canonical = normalize(security_id)
    if canonical:
        return canonical
    return name_key(display_name)


def reconcile(expected_keys: Iterable[str], produced_keys: Iterable[str]) -> set[str]:
    """Return the keys that were expected but not produced.

    Args:
        expected_keys: Identity keys every output must contain
        produced_keys: Identity keys actually present in the output

    Returns:
        Set of missing keys (empty when the output is complete)
    """
    expected = {k for k in expected_keys if k}
    missing = expected - set(produced_keys)
    if missing:
        logger.info(f"Reconciliation found {len(missing)} missing keys: {sorted(missing)}")
    return missing
