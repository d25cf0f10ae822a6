# pdfforge/pages.py
"""
Page selection helpers.

Page-range text looks like "1,3,5-8" (one-based, inclusive). Tokens that do not
parse or fall outside the document are dropped; an empty selection is an
error for the caller.
"""
from typing import List, Optional, Tuple

from .errors import InvalidInput


def _parse_token(token: str, page_count: int) -> Optional[Tuple[int, int]]:
    token = token.strip()
    if not token:
        return None
    try:
        if "-" in token:
            a, b = token.split("-", 1)
            start, end = int(a.strip()), int(b.strip())
        else:
            start = end = int(token)
    except ValueError:
        return None
    if start < 1 or end > page_count or start > end:
        return None
    return start, end


def parse_page_range(
    text: str,
    page_count: int,
    descending: bool = False,
    empty_message: str = "No valid pages specified.",
) -> List[int]:
    """Zero-based, de-duplicated page indices; ascending unless `descending`."""
    out = set()
    for part in (text or "").split(","):
        rng = _parse_token(part, page_count)
        if rng is None:
            continue
        out.update(range(rng[0] - 1, rng[1]))

    if not out:
        raise InvalidInput(empty_message)
    return sorted(out, reverse=descending)


def parse_page_groups(text: str, page_count: int) -> List[Tuple[int, int]]:
    """One (start, end) pair per valid comma token, one-based and inclusive."""
    groups = []
    for part in (text or "").split(","):
        rng = _parse_token(part, page_count)
        if rng is not None:
            groups.append(rng)
    return groups


def select_pages(selection: str, page_count: int, custom: str = "") -> List[int]:
    """Resolve all/odd/even or a custom range into zero-based indices."""
    selection = (selection or "all").strip().lower()
    if selection == "all":
        pages = list(range(page_count))
    elif selection == "odd":
        pages = [i for i in range(page_count) if (i + 1) % 2 == 1]
    elif selection == "even":
        pages = [i for i in range(page_count) if (i + 1) % 2 == 0]
    else:
        text = custom if selection == "custom" else selection
        return parse_page_range(text, page_count, empty_message="No valid pages selected.")

    if not pages:
        raise InvalidInput("No valid pages selected.")
    return pages
