"""Rule-based extraction of amounts and categories from chat messages.

Parsing is two-staged. :func:`parse_expense` is context-free: it runs an
ordered cascade of matchers over the normalized text and the first matcher
that fires wins. :func:`extract_expenses` is what the live chat handler uses;
it knows the group's budget categories and validates the candidate category
against them.
"""

import re
from collections.abc import Callable, Iterable

from ledger.models.schemas import UNCATEGORIZED, ExtractionResult, ParsedExpense

STOP_WORDS = (
    "spent",
    "paid",
    "expense",
    "for",
    "on",
    "the",
    "a",
    "an",
    "in",
    "at",
    "to",
    "bought",
    "purchase",
    "purchased",
)

_NUMBER = r"\d+(?:\.\d+)?"
_SUM = rf"{_NUMBER}(?:\s*\+\s*{_NUMBER})+"

STOP_WORDS_RE = re.compile(r"\b(?:" + "|".join(STOP_WORDS) + r")\b")
SUM_DASH_RE = re.compile(rf"({_SUM})\s*-\s*([a-z]+)")
SUM_RE = re.compile(_SUM)
SUM_SPACE_RE = re.compile(rf"({_SUM})\s+([a-z]+)")
AMOUNT_DASH_RE = re.compile(rf"({_NUMBER})\s*-\s*([a-z]+)")
AMOUNT_FIRST_RE = re.compile(rf"^({_NUMBER})\s+([a-z]+)")
CATEGORY_FIRST_RE = re.compile(rf"^([a-z]+)\s+({_NUMBER})")
BARE_NUMBER_RE = re.compile(rf"(?<![\d.])({_NUMBER})(?!\.?\d)")
ONLY_NUMBER_RE = re.compile(rf"^{_NUMBER}$")
NUMBER_RE = re.compile(_NUMBER)
WORD_RE = re.compile(r"\b[a-z]+\b")
CATEGORY_RE = re.compile(r"^[a-z]+$")

Matcher = Callable[[str], ParsedExpense | None]


def normalize(text: str) -> str:
    """Lowercase and drop filler words like 'spent' or 'for'."""
    return STOP_WORDS_RE.sub("", text.lower()).strip()


def _sum_terms(expr: str) -> float:
    return sum(float(term) for term in re.sub(r"\s+", "", expr).split("+"))


def match_sum_dash(text: str) -> ParsedExpense | None:
    """50+30-food"""
    m = SUM_DASH_RE.search(text)
    if m:
        return ParsedExpense(amount=_sum_terms(m.group(1)), category=m.group(2))
    return None


def match_sum_space(text: str) -> ParsedExpense | None:
    """50+30 food"""
    m = SUM_SPACE_RE.search(text)
    if m:
        return ParsedExpense(amount=_sum_terms(m.group(1)), category=m.group(2))
    return None


def match_amount_dash(text: str) -> ParsedExpense | None:
    """100-food"""
    m = AMOUNT_DASH_RE.search(text)
    if m:
        return ParsedExpense(amount=float(m.group(1)), category=m.group(2))
    return None


def match_amount_first(text: str) -> ParsedExpense | None:
    """100 food"""
    m = AMOUNT_FIRST_RE.match(text)
    if m:
        return ParsedExpense(amount=float(m.group(1)), category=m.group(2))
    return None


def match_category_first(text: str) -> ParsedExpense | None:
    """food 100"""
    m = CATEGORY_FIRST_RE.match(text)
    if m:
        return ParsedExpense(amount=float(m.group(2)), category=m.group(1))
    return None


def match_natural_language(text: str) -> ParsedExpense | None:
    """First number anywhere, categorised by its neighbouring word.

    The word right before the number is preferred; the word right after it
    is used when the previous one is missing or not purely alphabetic.
    """
    m = BARE_NUMBER_RE.search(text)
    if not m:
        return None

    before = text[: m.start()].split()
    after = text[m.end() :].split()
    category = None
    if before and CATEGORY_RE.match(before[-1]):
        category = before[-1]
    elif after and CATEGORY_RE.match(after[0]):
        category = after[0]
    return ParsedExpense(amount=float(m.group(1)), category=category)


def match_bare_amount(text: str) -> ParsedExpense | None:
    """100"""
    if ONLY_NUMBER_RE.match(text):
        return ParsedExpense(amount=float(text), category=None)
    return None


# Priority order is part of the parser's contract.
MATCHERS: tuple[Matcher, ...] = (
    match_sum_dash,
    match_sum_space,
    match_amount_dash,
    match_amount_first,
    match_category_first,
    match_natural_language,
    match_bare_amount,
)


def parse_expense(text: str) -> ParsedExpense | None:
    """Parse one amount and an optional category out of free text.

    Returns ``None`` when the text carries no number at all.
    """
    cleaned = normalize(text or "")
    if not cleaned:
        return None

    for matcher in MATCHERS:
        result = matcher(cleaned)
        if result is not None:
            return result
    return None


def validate_category(
    parsed: ParsedExpense | None, categories: Iterable[str]
) -> ExtractionResult:
    """Check a context-free parse against the group's budget categories.

    A missing category becomes ``uncategorized``; a category the group has
    no budget for is rejected and reported back.
    """
    if parsed is None or parsed.amount <= 0:
        return ExtractionResult()
    if parsed.category is None:
        return ExtractionResult(
            expenses=[ParsedExpense(amount=parsed.amount, category=UNCATEGORIZED)]
        )
    if parsed.category in set(categories):
        return ExtractionResult(expenses=[parsed])
    return ExtractionResult(unknown_categories=[parsed.category])


def extract_expenses(text: str, categories: Iterable[str]) -> ExtractionResult:
    """Turn a chat message into expenses for the group's known categories.

    Sums like ``50+30`` count as one amount. With one known category word
    every amount is booked under it. With a single amount and several known
    categories only the first one is used.
    Otherwise amounts and categories pair up by position. Messages without
    any known category fall back to :func:`parse_expense`.
    """
    known = set(categories)
    cleaned = normalize(text or "")
    cleaned = SUM_RE.sub(lambda m: f"{_sum_terms(m.group(0)):f}", cleaned)
    amounts = [float(token) for token in NUMBER_RE.findall(cleaned)]
    if not amounts:
        return ExtractionResult()

    found = [word for word in WORD_RE.findall(cleaned) if word in known]
    if not found:
        return validate_category(parse_expense(text), known)

    if len(found) == 1:
        pairs = [(amount, found[0]) for amount in amounts]
    elif len(amounts) == 1:
        pairs = [(amounts[0], found[0])]
    else:
        pairs = list(zip(amounts, found))

    return ExtractionResult(
        expenses=[
            ParsedExpense(amount=amount, category=category)
            for amount, category in pairs
            if amount > 0
        ]
    )
