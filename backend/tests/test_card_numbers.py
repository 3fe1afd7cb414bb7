from __future__ import annotations

import pytest

from peeap.modules.cards.luhn import (
    generate_card_number,
    generate_cvv,
    is_valid_card_number,
    luhn_check_digit,
    mask_card_number,
)


@pytest.mark.parametrize(
    "number",
    ["4111111111111111", "4111 1111 1111 1111", "4111-1111-1111-1111", "5555555555554444", "378282246310005"],
)
def test_known_good_numbers_pass_luhn(number):
    assert is_valid_card_number(number)


@pytest.mark.parametrize("number", ["4111111111111112", "", None, "4111abcd11111111", "1234567", "4" * 20])
def test_bad_numbers_fail_luhn(number):
    assert not is_valid_card_number(number)


def test_check_digit_matches_reference_value():
    assert luhn_check_digit("411111111111111") == 1
    assert luhn_check_digit("7992739871") == 3


def test_generated_numbers_use_bin_and_pass_luhn():
    for _ in range(50):
        n = generate_card_number()
        assert len(n) == 16
        assert n.startswith("400000")
        assert is_valid_card_number(n)


def test_generate_rejects_bad_bin():
    with pytest.raises(ValueError):
        generate_card_number("40x0")
    with pytest.raises(ValueError):
        generate_card_number("1" * 16)


def test_mask_keeps_first_and_last_four():
    assert mask_card_number("4000123412341234") == "4000-****-****-1234"
    assert mask_card_number("4000 1234 1234 1234") == "4000-****-****-1234"
    assert mask_card_number("1234") == "****"


def test_cvv_is_three_digits():
    for _ in range(20):
        cvv = generate_cvv()
        assert len(cvv) == 3 and cvv.isdigit()
