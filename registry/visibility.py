from __future__ import annotations
from typing import Any

def can_access(user_id: str, spell: Any) -> bool:
    """
    Visibility rules, in order:
      public  -> anyone
      private -> owner only
      team    -> owner only until team membership exists (known gap, not a bug)
    Malformed input raises; callers surface that as an internal error.
    """
    if not isinstance(user_id, str) or not user_id:
        raise TypeError("user_id must be a non-empty string")

    visibility = getattr(spell, "visibility", None)
    owner_id = getattr(spell, "owner_id", None)
    if not isinstance(visibility, str) or not isinstance(owner_id, str):
        raise TypeError("spell must carry string visibility and owner_id")

    if visibility == "public":
        return True
    if visibility == "private":
        return user_id == owner_id
    if visibility == "team":
        # TODO: check team membership once teams are modeled
        return user_id == owner_id
    raise ValueError(f"Unknown visibility: {visibility}")
