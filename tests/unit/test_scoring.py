from datetime import datetime, timedelta, timezone

import pytest

from eventplanner.errors import PreferenceModelUnavailableError
from eventplanner.models import Capacity, FilterResult, ScoreBreakdown, SocialProof
from eventplanner.scoring import CompositePreferenceScorer, ScoringEngine, is_urgent
from eventplanner.scoring.engine import novelty_score, social_score, urgency_score


class FixedScorer:
    """Returns a preset composite per event id."""

    def __init__(self, scores):
        self.scores = scores

    def score(self, event, now):
        value = self.scores[event.id]
        return ScoreBreakdown(base_preference=value / 100, composite=value, final=value)


class BrokenScorer:
    def score(self, event, now):
        raise PreferenceModelUnavailableError("interaction history unreachable")


class FixedModel:
    def __init__(self, value):
        self.value = value

    def predict(self, event):
        return self.value


def nap_flag():
    return FilterResult(passed=True, is_during_nap_time=True)


def test_nap_penalty_applied_to_free_event(event_factory, now):
    event = event_factory(cost=0.0, filter_result=nap_flag())
    ScoringEngine(FixedScorer({event.id: 70.0})).score([event], now=now)

    assert event.preference_score == 50.0
    assert event.score_breakdown.nap_penalty == 20.0
    assert event.score_breakdown.composite == 70.0


def test_nap_penalty_floors_at_zero(event_factory, now):
    event = event_factory(filter_result=nap_flag())
    ScoringEngine(FixedScorer({event.id: 12.0})).score([event], now=now)
    assert event.preference_score == 0.0


def test_neutral_fallback_when_model_unavailable(event_factory, now):
    plain = event_factory(event_id="plain")
    napping = event_factory(event_id="napping", filter_result=nap_flag())

    ranked = ScoringEngine(BrokenScorer()).score([napping, plain], now=now)

    assert [e.id for e in ranked] == ["plain", "napping"]
    assert plain.preference_score == 50.0
    assert napping.preference_score == 30.0
    assert plain.score_breakdown.used_neutral_fallback


def test_default_order_is_score_then_date(event_factory, now):
    start = datetime(2025, 6, 14, 17, 0, tzinfo=timezone.utc)
    events = [
        event_factory(event_id="later-tie", start=start + timedelta(days=1)),
        event_factory(event_id="best", start=start + timedelta(days=3)),
        event_factory(event_id="earlier-tie", start=start),
    ]
    scorer = FixedScorer({"later-tie": 60.0, "best": 80.0, "earlier-tie": 60.0})

    ranked = ScoringEngine(scorer).score(events, now=now)

    assert [e.id for e in ranked] == ["best", "earlier-tie", "later-tie"]


def test_scoring_is_deterministic(event_factory, now):
    events = [event_factory(event_id=f"evt-{i}") for i in range(5)]
    scorer = FixedScorer({e.id: 55.0 for e in events})
    engine = ScoringEngine(scorer)

    first = [e.id for e in engine.score(list(events), now=now)]
    second = [e.id for e in engine.score(list(reversed(events)), now=now)]

    assert first == second == sorted(first)


def test_urgent_mode_puts_urgent_events_first(event_factory, now):
    start = datetime(2025, 6, 20, 17, 0, tzinfo=timezone.utc)
    events = [
        event_factory(event_id="popular", start=start),
        event_factory(event_id="almost-full", start=start + timedelta(days=2),
                      capacity=Capacity(available=2, total=20)),
        event_factory(event_id="opens-soon", start=start + timedelta(days=1),
                      registration_opens=now + timedelta(hours=10)),
    ]
    scorer = FixedScorer({"popular": 95.0, "almost-full": 30.0, "opens-soon": 40.0})
    engine = ScoringEngine(scorer)

    urgent_first = engine.score(events, prioritize_urgent=True, now=now)
    default = engine.score(events, prioritize_urgent=False, now=now)

    assert [e.id for e in urgent_first] == ["opens-soon", "almost-full", "popular"]
    assert [e.id for e in default] == ["popular", "opens-soon", "almost-full"]
    assert urgent_first[0].score_breakdown.is_urgent


def test_is_urgent_thresholds(event_factory, now):
    assert is_urgent(event_factory(capacity=Capacity(available=4, total=20)), now)
    assert not is_urgent(event_factory(capacity=Capacity(available=5, total=20)), now)
    assert not is_urgent(event_factory(registration_opens=now - timedelta(hours=1)), now)
    assert not is_urgent(event_factory(registration_opens=now + timedelta(hours=30)), now)


# --- Tests for the composite scorer ---
def test_composite_blends_weighted_components(event_factory, now):
    scorer = CompositePreferenceScorer(FixedModel(0.7))
    breakdown = scorer.score(event_factory(), now)

    assert breakdown.base_preference == 0.7
    assert breakdown.novelty == 75.0
    assert breakdown.urgency == 70.0
    assert breakdown.social == 50.0
    assert breakdown.composite == pytest.approx(68.0)


def test_novelty_score_rules(event_factory):
    assert novelty_score(event_factory(), visited_venues=["main library"]) == 20.0
    assert novelty_score(event_factory(is_recurring=True)) == 40.0
    assert novelty_score(event_factory(title="Grand Opening Celebration")) == 95.0
    assert novelty_score(event_factory(title="Halloween Parade")) == 85.0


def test_urgency_score_rules(event_factory, now):
    far = now + timedelta(days=40)
    assert urgency_score(event_factory(start=far), now) == 50.0
    assert urgency_score(event_factory(start=far, registration_opens=now + timedelta(hours=1)), now) == 100.0
    assert urgency_score(event_factory(start=far, capacity=Capacity(available=1, total=20)), now) == 95.0
    assert urgency_score(event_factory(start=now + timedelta(days=5)), now) == 85.0


def test_social_score_caps_at_hundred(event_factory):
    proof = SocialProof(rating=4.8, review_count=250, interested_count=400)
    assert social_score(event_factory(title="Trending Family Fest", social_proof=proof)) == 100.0
    assert social_score(event_factory(social_proof=SocialProof(rating=4.2, review_count=5, interested_count=20))) == 70.0
