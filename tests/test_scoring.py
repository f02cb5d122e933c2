from datetime import date

import pytest

from lead_sync.scoring import IcpFitScorer, ServiceMixValueEstimator, expected_close_date


def test_fit_score_adds_size_industry_seniority_and_intent():
    scorer = IcpFitScorer(target_industries=frozenset({"Software"}))

    assert scorer.score({}) == 0
    assert scorer.score({"employee_count": "1,200"}) == 20
    assert scorer.score({"employee_count": "12"}) == 10
    assert (
        scorer.score(
            {"employee_count": "500", "industry": "software", "seniority": "VP", "intent_signal": "High"}
        )
        == 100
    )
    assert scorer.score({"intent_signal": "medium"}) == 15


def test_fit_score_is_capped():
    scorer = IcpFitScorer(
        weights={"company_size": 3.0, "industry": 1.0, "seniority": 1.0, "intent": 1.0},
    )

    assert scorer.score({"employee_count": "300", "seniority": "director", "intent_signal": "high"}) == 100


@pytest.mark.parametrize(
    ("fields", "expected"),
    [
        ({"fit_score": "20"}, 10000),
        ({"fit_score": "50"}, 25000),
        ({"fit_score": "70"}, 50000),
        ({}, 25000),
        ({"fit_score": "90", "qualified_services": "Security audit"}, 70000),
    ],
)
def test_value_estimate_by_band_and_services(fields, expected):
    assert ServiceMixValueEstimator().estimate(fields) == expected


@pytest.mark.parametrize(
    ("timeframe", "expected"),
    [
        ("Immediate need", date(2024, 2, 29)),
        ("Q3", date(2024, 4, 30)),
        ("within the year", date(2025, 1, 31)),
        (None, date(2024, 4, 30)),
    ],
)
def test_expected_close_date_from_timeframe(timeframe, expected):
    assert expected_close_date(timeframe, date(2024, 1, 31)) == expected
