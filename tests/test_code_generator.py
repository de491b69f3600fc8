from otpservice.services import code_generator
from otpservice.services.code_generator import generate_code


def test_codes_are_six_digit_numbers():
    for _ in range(2000):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()
        assert 100000 <= int(code) <= 999999


def test_leading_zero_never_truncates(monkeypatch):
    picks = iter("1" + "0" * 5)
    monkeypatch.setattr(code_generator.secrets, "choice", lambda _alphabet: next(picks))
    assert generate_code() == "100000"


def test_codes_vary():
    assert len({generate_code() for _ in range(50)}) > 1
