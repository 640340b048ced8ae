import pytest

from database import as_number, contains, owned, visible


@pytest.mark.parametrize("text, expected", [
    ("1001", 1001),
    (" 42 ", 42),
    ("²", None),
    ("١٢", None),
    ("99999999999999999999", None),
    ("12a", None),
    ("", None),
])
def test_as_number(text, expected):
    assert as_number(text) == expected


def test_query_helpers_do_not_mutate_input():
    base = {"status": "sent"}
    query = visible(owned("o1", base))
    assert query == {"status": "sent", "created_by": "o1", "removed": {"$ne": True}}
    assert base == {"status": "sent"}


def test_contains_escapes_regex():
    assert contains("a.b*") == {"$regex": r"a\.b\*", "$options": "i"}
