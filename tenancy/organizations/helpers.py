"""
Shared helpers for the tenancy services: slugs, sorting and pagination.
"""

import re
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from tenancy.types.organization import Page, SortOrder

T = TypeVar("T")

_ORG_SLUG_STRIP = re.compile(r"[^\w\s-]")
_ORG_SLUG_COLLAPSE = re.compile(r"[\s_-]+")
_TEAM_SLUG_REPLACE = re.compile(r"[^a-z0-9]+")


def generate_slug(name: str) -> str:
    """
    Build an organization slug from a display name.

    "Acme Corp!" -> "acme-corp"
    """
    slug = name.lower().strip()
    slug = _ORG_SLUG_STRIP.sub("", slug)
    slug = _ORG_SLUG_COLLAPSE.sub("-", slug)
    return slug.strip("-") or "organization"


def generate_team_slug(name: str) -> str:
    """Build a team slug from a display name, falling back to "team"."""
    slug = _TEAM_SLUG_REPLACE.sub("-", name.lower()).strip("-")
    return slug or "team"


async def ensure_unique_slug(
    base_slug: str,
    is_taken: Callable[[str], Awaitable[bool]],
) -> str:
    """
    Append ``-1``, ``-2``, ... to ``base_slug`` until ``is_taken`` is False.

    Args:
        base_slug: Preferred slug.
        is_taken: Async predicate reporting whether a candidate is in use.

    Returns:
        The first free candidate.
    """
    slug = base_slug
    counter = 1
    while await is_taken(slug):
        slug = f"{base_slug}-{counter}"
        counter += 1
    return slug


def email_domain(email: Optional[str]) -> Optional[str]:
    """Lowercased domain part of an email address, or None."""
    if not email or "@" not in email:
        return None
    domain = email.strip().lower().rsplit("@", 1)[1]
    return domain or None


def sort_items(
    items: Sequence[T],
    sort_by: str,
    sort_order: SortOrder = SortOrder.ASC,
    allowed: Sequence[str] = (),
) -> List[T]:
    """
    Sort models by an attribute. ``None`` values sort last in either order.

    Raises:
        ValueError: If ``sort_by`` is not one of ``allowed``.
    """
    if allowed and sort_by not in allowed:
        raise ValueError(f"Cannot sort by {sort_by}; expected one of {', '.join(allowed)}")

    present = [item for item in items if getattr(item, sort_by, None) is not None]
    missing = [item for item in items if getattr(item, sort_by, None) is None]

    def key(item: Any) -> Any:
        value = getattr(item, sort_by)
        return value.value if hasattr(value, "value") else value

    present.sort(key=key, reverse=SortOrder(sort_order) == SortOrder.DESC)
    return present + missing


def paginate(items: Sequence[T], offset: int = 0, limit: int = 50) -> Page:
    """Slice ``items`` into a page."""
    if offset < 0:
        raise ValueError("offset must be >= 0")
    if not 1 <= limit <= 500:
        raise ValueError("limit must be between 1 and 500")
    return Page(
        items=list(items[offset:offset + limit]),
        total=len(items),
        offset=offset,
        limit=limit,
    )
