import pytest

from numbering import next_number


def test_first_number_defaults_to_1000(db):
    assert next_number(db, "o1", "invoice") == 1000
    assert next_number(db, "o1", "invoice") == 1001
    assert next_number(db, "o2", "invoice") == 1000


def test_seeded_from_existing_numbers(db):
    db["invoice"].insert_many([{"number": 41, "created_by": "o1"}, {"number": 7, "created_by": "o1"}])
    assert next_number(db, "o1", "invoice") == 42


def test_seeded_from_settings(db):
    db["settings"].insert_one({"user_id": "o1", "invoice_start_number": 1, "quote_start_number": 300})
    assert next_number(db, "o1", "invoice") == 1
    assert next_number(db, "o1", "quote") == 300


def test_unknown_kind(db):
    with pytest.raises(ValueError):
        next_number(db, "o1", "receipt")


def test_counter_only_moves_forward(db):
    assert next_number(db, "o1", "quote") == 1000
    db["quote"].delete_many({"created_by": "o1"})
    db["settings"].insert_one({"user_id": "o1", "quote_start_number": 10})
    assert next_number(db, "o1", "quote") == 1001
