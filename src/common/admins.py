from __future__ import annotations

import json
from typing import FrozenSet, Iterable, Optional


AdminIds = FrozenSet[str]


def _norm(value: object) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    s = str(value).strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        s = s[1:-1].strip()
    return s or None


def parse_admin_ids(raw: Optional[str]) -> AdminIds:
    """Parse administrator identities from CSV or JSON array.

    Accepts either:
    - JSON array: e.g., "[12345, \"67890\"]"
    - CSV (commas/newlines/spaces treated as separators): "12345, 67890"

    Identities are kept as strings so they compare equal to channel sender ids.
    Empty or invalid input yields an empty set (nobody is an administrator).
    """
    if not raw or not isinstance(raw, str):
        return frozenset()

    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, list):
        return frozenset(v for v in (_norm(item) for item in data) if v)
    if isinstance(data, (int, float)) and not isinstance(data, bool):
        v = _norm(data)
        return frozenset([v]) if v else frozenset()

    norm = raw.replace("\n", ",").replace(" ", ",")
    return frozenset(v for v in (_norm(tok) for tok in norm.split(",")) if v)


class AdminPolicy:
    """Decides whether a sender holds broadcast privileges."""

    def __init__(self, admin_ids: Iterable[str] = ()) -> None:
        self._ids: AdminIds = frozenset(str(i) for i in admin_ids)

    def __call__(self, user_id: str) -> bool:
        return str(user_id) in self._ids

    def __len__(self) -> int:
        return len(self._ids)


__all__ = ["AdminPolicy", "parse_admin_ids"]
