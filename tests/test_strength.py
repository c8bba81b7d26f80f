import pytest

from authcore.service.strength import (
    StrengthValidator,
    strength_label,
    validate_password_strength,
)


def test_strong_password_is_valid():
    report = validate_password_strength("CorrectHorse9!Battery")

    assert report.is_valid
    assert report.errors == []
    assert report.score == 9
    assert report.strength == "very-strong"


def test_too_short_reports_error():
    report = validate_password_strength("short")

    assert not report.is_valid
    assert any("at least 8" in err for err in report.errors)


def test_too_long_reports_error():
    report = validate_password_strength("Aa1!" + "xy" * 70)

    assert not report.is_valid
    assert any("at most 128" in err for err in report.errors)


@pytest.mark.parametrize("password", ["MyPassword99!", "Qwerty!2024xyz", "ADMIN-ZoneX9!", "123456Abc!xyz"])
def test_deny_list_substrings_are_errors(password):
    report = validate_password_strength(password)

    assert not report.is_valid
    assert "password contains a common weak pattern" in report.errors


def test_low_aggregate_score_is_rejected_without_rule_errors():
    report = validate_password_strength("aaaaaaaa")

    assert report.errors == []
    assert report.score == 3
    assert report.strength == "weak"
    assert not report.is_valid


def test_repeated_runs_and_patterns_cost_points():
    clean = validate_password_strength("Tr0ub4dor&Zeta")
    repeated = validate_password_strength("Trooo4dor&Zeta")

    assert clean.score - repeated.score == 1


def test_custom_floor():
    validator = StrengthValidator(min_score=9)

    assert not validator.validate("Tr0ub4dor&Z").is_valid
    assert validator.validate("CorrectHorse9!Battery").is_valid


def test_unencodable_characters_are_errors():
    report = validate_password_strength("CorrectHorse9!\ud800Battery")

    assert not report.is_valid
    assert "password contains characters that cannot be encoded" in report.errors


@pytest.mark.parametrize(
    "score,label",
    [(0, "weak"), (3, "weak"), (4, "medium"), (5, "medium"), (6, "strong"), (7, "strong"), (8, "very-strong")],
)
def test_strength_labels(score, label):
    assert strength_label(score) == label
