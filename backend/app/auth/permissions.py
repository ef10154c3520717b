"""Permission system for shipping RBAC.

Design:
  - Each role has a set of DEFAULT permissions (defined here, not in DB).
  - `User.custom_permissions` holds per-user {perm: True/False} overrides.
  - `resolve_permissions(role, custom_permissions)` computes the effective
    permission set, which is embedded in the JWT so checks are token-only.

Permission naming: `<resource>.<action>`
"""

from __future__ import annotations


# ── All known permissions ───────────────────────────────────

ALL_PERMISSIONS: set[str] = {
    "pallet.read",            # view pallets and systems
    "pallet.write",           # create, move, lock, release, edit DOA numbers
    "pallet.delete",          # delete empty pallets
    "pallet.admin",           # repair jobs (shape backfill)
    "system.write",           # register systems
}


# ── Role → default permissions ──────────────────────────────

ROLE_DEFAULTS: dict[str, set[str]] = {
    "administrator": ALL_PERMISSIONS.copy(),

    "supervisor": {
        "pallet.read", "pallet.write", "pallet.delete",
        "system.write",
    },

    "operator": {
        "pallet.read", "pallet.write",
    },

    "viewer": {
        "pallet.read",
    },
}


# ── Resolution ──────────────────────────────────────────────

def resolve_permissions(
    role: str,
    custom_overrides: dict[str, bool] | None = None,
) -> list[str]:
    """Compute effective permissions for a user.

    1. Start with the role's defaults.
    2. Apply custom_overrides: {perm: True} adds, {perm: False} removes.
    3. Return a sorted list (for stable JWT claims).
    """
    base = ROLE_DEFAULTS.get(role, set()).copy()

    if custom_overrides:
        for perm, granted in custom_overrides.items():
            if perm not in ALL_PERMISSIONS:
                continue  # ignore unknown permissions
            if granted:
                base.add(perm)
            else:
                base.discard(perm)

    return sorted(base)


def has_permission(user_permissions: list[str] | set[str], required: str) -> bool:
    """Check whether a permission set satisfies a requirement ("*" grants all)."""
    return "*" in user_permissions or required in user_permissions
