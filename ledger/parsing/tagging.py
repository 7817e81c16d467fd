import re
from typing import get_args

from ledger.models.schemas import (
    UNCATEGORIZED,
    Member,
    MentionSpan,
    Relation,
    TaggedExpense,
)
from ledger.parsing.expense_parser import parse_expense

RELATIONS: tuple[Relation, ...] = get_args(Relation)

MARKER_RE = re.compile(r"\s(?:for|by|split)\s?@\w+", re.IGNORECASE)


def resolve_member(span: MentionSpan, roster: list[Member]) -> Member | None:
    """Find the roster entry a mention refers to.

    Tries the @username first, then the Telegram user id carried by text
    mentions, then the display name.
    """
    handle = span.text.lstrip("@").lower()
    if handle:
        for member in roster:
            if member.username and member.username.lower() == handle:
                return member

    if span.user_id is not None:
        for member in roster:
            if member.telegram_user_id == span.user_id:
                return member

    name = span.display_name or span.text.lstrip("@")
    for member in roster:
        if member.display_name and member.display_name == name:
            return member
    return None


def find_relation(text: str) -> Relation | None:
    lowered = text.lower()
    for relation in RELATIONS:
        if f" {relation} @" in lowered or f" {relation}@" in lowered:
            return relation
    return None


def strip_markers(text: str) -> str:
    return re.sub(r"\s+", " ", MARKER_RE.sub(" ", text)).strip()


def resolve_tagged_expense(
    text: str, mentions: list[MentionSpan], roster: list[Member]
) -> TaggedExpense | None:
    """Parse messages like ``100-food split @alice``.

    Returns ``None`` unless the message has a mention of a known member, a
    relation marker in front of it and a non-zero amount.
    """
    if not mentions:
        return None

    member = resolve_member(mentions[0], roster)
    if member is None:
        return None

    relation = find_relation(text)
    if relation is None:
        return None

    cleaned = strip_markers(text)
    parsed = parse_expense(cleaned)
    if parsed is None or parsed.amount == 0:
        return None

    return TaggedExpense(
        amount=parsed.amount,
        category=parsed.category or UNCATEGORIZED,
        member=member,
        relation=relation,
        cleaned_comment=cleaned,
    )
