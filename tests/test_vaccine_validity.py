from datetime import date, datetime

import pytest

from vaccine_validity import (
    DEFAULT_VALIDITY_YEARS,
    LIFELONG,
    days_until_expiry,
    expiry_date,
    format_span,
    parse_date,
    sort_by_expiry,
    sort_by_name,
    sort_by_status,
    status_priority,
    status_text,
    time_since,
    validity_status,
    validity_years,
)

NOW = "2025-01-01"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Masern", LIFELONG),
        ("MMR (Masern, Mumps, Röteln)", LIFELONG),
        ("Hepatitis B", LIFELONG),
        ("Hepatitis A", 20),
        ("Influenza 2024/25", 1),
        ("Grippe", 1),
        ("COVID-19 Booster", 1),
        ("FSME", 3),
        ("Tetanus", 10),
        ("Tollwut", 3),
        ("Gürtelrose", 5),
        ("Cholera", 2),
        ("Something new", DEFAULT_VALIDITY_YEARS),
    ],
)
def test_validity_years(name, expected):
    assert validity_years(name) == expected


def test_tetanus_expiring_on_reference_day_is_overdue():
    assert status_text("Tetanus", "2015-01-01", now=NOW) == "Expired today"
    status = validity_status("Tetanus", "2015-01-01", now=NOW)
    assert status["state"] == "expired"
    assert status["expiresOn"] == "2025-01-01"
    assert status["daysRemaining"] == 0


def test_masern_is_lifelong():
    assert status_text("Masern", "2000-01-01", now=NOW) == "Lifelong"
    status = validity_status("Masern", "2000-01-01", now=NOW)
    assert status["state"] == LIFELONG
    assert status["expiresOn"] is None
    assert status["daysRemaining"] is None


def test_overdue_reported_in_years():
    # 2024 is a leap year: 366 days overdue
    assert status_text("Tetanus", "2014-01-01", now=NOW) == "Expired 1 year ago"
    assert status_text("Tetanus", "2010-01-01", now=NOW) == "Expired 5 years ago"


def test_upcoming_buckets():
    assert status_text("Covid", "2024-01-20", now=NOW) == "Expires in 19 days"
    assert status_text("FSME", "2022-03-01", now=NOW) == "Expires in 1 month"
    assert status_text("Grippe", "2024-10-01", now=NOW) == "Expires in 9 months"
    assert status_text("Tetanus", "2020-07-01", now=NOW) == "Expires in 5 years and 6 months"


def test_states():
    assert validity_status("FSME", "2022-03-01", now=NOW)["state"] == "expiring_soon"
    assert validity_status("Grippe", "2024-10-01", now=NOW)["state"] == "valid"
    assert validity_status("Tetanus", "2014-01-01", now=NOW)["state"] == "expired"


def test_leap_day_rolls_forward():
    assert expiry_date("Grippe", "2024-02-29") == date(2025, 3, 1)


def test_days_until_expiry_counts_whole_days():
    assert days_until_expiry("Grippe", "2024-01-02", now="2025-01-01T12:00:00") == 0
    assert days_until_expiry("Grippe", "2024-01-02", now="2025-01-01T00:00:00") == 1
    assert days_until_expiry("Masern", "2024-01-02", now=NOW) is None


def test_format_span():
    assert format_span(0) == "0 days"
    assert format_span(1) == "1 day"
    assert format_span(30) == "1 month"
    assert format_span(364) == "12 months"
    assert format_span(365) == "1 year"
    assert format_span(730 + 61) == "2 years and 2 months"


def test_sort_by_status():
    vaccinations = [
        {"name": "Polio", "date": "1990-05-01"},
        {"name": "Grippe", "date": "2024-10-01"},
        {"name": "Masern", "date": "2000-01-01"},
        {"name": "Tetanus", "date": "2014-01-01"},
        {"name": "FSME", "date": "2022-03-01"},
        {"name": "Covid", "date": "2024-06-01"},
    ]
    ordered = [v["name"] for v in sort_by_status(vaccinations, now=NOW)]
    assert ordered == ["Tetanus", "FSME", "Covid", "Grippe", "Masern", "Polio"]


def test_sort_by_expiry_puts_overdue_first_and_lifelong_last():
    vaccinations = [
        {"name": "Polio", "date": "1990-05-01"},
        {"name": "Grippe", "date": "2024-10-01"},
        {"name": "Tetanus", "date": "2015-01-01"},
        {"name": "Cholera", "date": "2022-06-01"},
        {"name": "Covid", "date": "2024-06-01"},
    ]
    ordered = [v["name"] for v in sort_by_expiry(vaccinations, now=NOW)]
    # Tetanus expires on the reference day itself and counts as overdue
    assert ordered == ["Cholera", "Tetanus", "Covid", "Grippe", "Polio"]


def test_sort_by_name_ignores_case():
    vaccinations = [
        {"name": "tetanus", "date": "2015-01-01"},
        {"name": "FSME", "date": "2022-03-01"},
        {"name": "Grippe", "date": "2024-10-01"},
    ]
    assert [v["name"] for v in sort_by_name(vaccinations)] == ["FSME", "Grippe", "tetanus"]


def test_status_priority():
    assert status_priority("Tetanus", "2014-01-01", now=NOW) < status_priority("FSME", "2022-03-01", now=NOW)
    assert status_priority("Grippe", "2024-10-01", now=NOW) < status_priority("Masern", "2000-01-01", now=NOW)


def test_time_since():
    assert time_since("2024-01-01", now=NOW) == "1 year ago"
    assert time_since("2024-12-20", now=NOW) == "12 days ago"


def test_parse_date():
    assert parse_date("2025-01-01T10:00:00Z") == datetime(2025, 1, 1, 10)
    assert parse_date(date(2025, 1, 1)) == datetime(2025, 1, 1)
    with pytest.raises(ValueError):
        parse_date("not a date")
    with pytest.raises(ValueError):
        parse_date(None)
