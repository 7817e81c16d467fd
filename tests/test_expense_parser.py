import pytest

from ledger.models.schemas import UNCATEGORIZED
from ledger.parsing.expense_parser import (
    extract_expenses,
    normalize,
    parse_expense,
    validate_category,
)


@pytest.mark.parametrize(
    "text, amount, category",
    [
        ("50+30-food", 80, "food"),
        ("10 + 20 + 5 - snacks", 35, "snacks"),
        ("50+30 food", 80, "food"),
        ("100-food", 100, "food"),
        ("100 food", 100, "food"),
        ("food 100", 100, "food"),
        ("99.50-food", 99.5, "food"),
        ("100-FOOD", 100, "food"),
        ("100-Food", 100, "food"),
        ("spent 200 on groceries", 200, "groceries"),
        ("paid 50 for taxi", 50, "taxi"),
        ("500rs food", 500, "rs"),
        ("rs500", 500, "rs"),
        ("taxi was 120.", 120, "was"),
    ],
)
def test_parse_expense(text, amount, category):
    parsed = parse_expense(text)
    assert parsed is not None
    assert parsed.amount == pytest.approx(amount)
    assert parsed.category == category


def test_dash_and_space_forms_agree():
    for n, c in [(1, "x"), (250, "rent"), (12.75, "coffee")]:
        assert parse_expense(f"{n}-{c}") == parse_expense(f"{n} {c}")


def test_bare_amount_has_no_category():
    parsed = parse_expense("100")
    assert parsed.amount == 100
    assert parsed.category is None


@pytest.mark.parametrize("text", ["", "just some text", "hello there!", None])
def test_text_without_digits_is_not_an_expense(text):
    assert parse_expense(text) is None


def test_natural_language_prefers_word_before_number():
    parsed = parse_expense("dinner with team 1200 yesterday")
    assert parsed.amount == 1200
    assert parsed.category == "team"


def test_natural_language_falls_back_to_word_after_number():
    parsed = parse_expense("!! 40 chai")
    assert parsed.amount == 40
    assert parsed.category == "chai"


def test_normalize_strips_filler_words_only():
    assert normalize("Spent 20 on the Bus").split() == ["20", "bus"]
    assert normalize("another 5 forks") == "another 5 forks"


def test_validate_category():
    known = ["food", "travel"]
    assert validate_category(None, known).expenses == []
    assert validate_category(parse_expense("0-food"), known).expenses == []

    accepted = validate_category(parse_expense("100-food"), known)
    assert [(e.amount, e.category) for e in accepted.expenses] == [(100, "food")]

    bare = validate_category(parse_expense("75"), known)
    assert bare.expenses[0].category == UNCATEGORIZED

    rejected = validate_category(parse_expense("100-pizza"), known)
    assert rejected.expenses == []
    assert rejected.unknown_categories == ["pizza"]


class TestExtractExpenses:
    categories = {"food", "travel", "grocery"}

    def pairs(self, text):
        return [(e.amount, e.category) for e in extract_expenses(text, self.categories).expenses]

    def test_many_amounts_one_category(self):
        assert self.pairs("grocery 120 and 30") == [(120, "grocery"), (30, "grocery")]

    def test_one_amount_many_categories_uses_first(self):
        assert self.pairs("travel and food 500") == [(500, "travel")]

    def test_positional_pairing(self):
        assert self.pairs("100 food 50 travel") == [(100, "food"), (50, "travel")]

    def test_extra_amounts_are_dropped_when_pairing(self):
        assert self.pairs("100 food 50 travel 20") == [(100, "food"), (50, "travel")]

    def test_zero_amounts_are_skipped(self):
        assert self.pairs("0 food 50 travel") == [(50, "travel")]

    def test_unknown_category_is_reported(self):
        result = extract_expenses("100-pizza", self.categories)
        assert result.expenses == []
        assert result.unknown_categories == ["pizza"]

    def test_no_amount(self):
        assert extract_expenses("food is great", self.categories).expenses == []

    def test_bare_amount_is_uncategorized(self):
        assert self.pairs("250") == [(250, UNCATEGORIZED)]

    def test_sums_are_one_amount(self):
        assert self.pairs("50+30-food") == [(80, "food")]
        assert self.pairs("grocery 10 + 5 and 20") == [(15, "grocery"), (20, "grocery")]
        assert self.pairs("50+30 food 20 travel") == [(80, "food"), (20, "travel")]
