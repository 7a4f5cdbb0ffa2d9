"""
Tests for keyword extraction, stance classification and the scoring engine.
"""

from datetime import timedelta

import pytest

from storyintel.core.models import AlertLevel
from storyintel.core.schemas import PlatformSignals, SourceRef, StoryCandidate
from storyintel.scoring.caches import ExemplarSnapshot, ProfileSnapshot
from storyintel.scoring.engine import (
    VelocityConfig,
    category_score,
    classify_alert,
    exemplar_bonus,
    keyword_match_score,
    recency_score,
    round_points,
    score_story,
    source_score,
    velocity_blend,
    velocity_score,
)
from storyintel.scoring.keywords import extract_keywords
from storyintel.scoring.stance import NeutralStance, PhraseListStance

from conftest import NOW

ECONOMY = ProfileSnapshot(
    id="1",
    category="Economy",
    keyword_weights={'trump': 1.0, 'economy': 1.0, 'soars': 1.0, 'record': 1.0, 'highs': 1.0},
)


def make_candidate(headline="Trump Economy Soars to Record Highs", n_sources=1,
                   signals=None, first_seen_at=NOW):
    return StoryCandidate(
        headline=headline,
        source_url="https://example.com/a",
        sources=[SourceRef(name=f"Outlet {i}", url=f"https://outlet{i}.example/a") for i in range(n_sources)],
        platform_signals=signals,
        first_seen_at=first_seen_at,
    )


class TestKeywords:

    def test_extract_keywords_basic(self):
        assert extract_keywords("Trump Economy Soars to Record Highs!") == [
            'trump', 'economy', 'soars', 'record', 'highs'
        ]

    def test_short_words_and_stop_words_dropped(self):
        # "says" and "over" are stop-words, "gop" and "war" too short
        assert extract_keywords("GOP says war over tariffs") == ['tariffs']

    def test_punctuation_stripped_and_duplicates_kept(self):
        assert extract_keywords("Border, border: BORDER crisis") == ['border', 'border', 'border', 'crisis']

    def test_no_stemming(self):
        assert extract_keywords("tariff tariffs") == ['tariff', 'tariffs']

    def test_empty(self):
        assert extract_keywords("") == []
        assert extract_keywords(None) == []


class TestStance:

    def test_pro_signal_bonus(self):
        assert PhraseListStance().adjustment("Trump Economy Soars") == 10.0

    def test_anti_signal_penalty(self):
        assert PhraseListStance().adjustment("Trump indicted in new case") == -25.0

    def test_anti_list_wins_when_both_match(self):
        headline = "Trump Rally Overshadowed as Trump Indicted"
        assert PhraseListStance().adjustment(headline) == -25.0

    def test_neutral_headline(self):
        assert PhraseListStance().adjustment("Local library extends opening hours") == 0.0
        assert NeutralStance().adjustment("Trump indicted") == 0.0

    def test_custom_lists(self):
        stance = PhraseListStance(anti_signals=["Bad Thing"], pro_signals=["good thing"], penalty=-5, bonus=2)
        assert stance.adjustment("a bad thing happened") == -5
        assert stance.adjustment("a GOOD THING happened") == 2


class TestTerms:

    def test_category_score_picks_best_profile(self):
        other = ProfileSnapshot(id="2", category="Crime", keyword_weights={'record': 0.5})
        score, category, cluster = category_score(['trump', 'economy', 'record'], [other, ECONOMY])
        assert category == "Economy"
        assert cluster == "1"
        assert score == pytest.approx(3 / 5 * 30)

    def test_category_score_saturates(self):
        heavy = ProfileSnapshot(id="3", category="Economy", keyword_weights={'economy': 9.0})
        score, _, _ = category_score(['economy'], [heavy])
        assert score == 30.0

    def test_category_score_no_match(self):
        assert category_score(['weather'], [ECONOMY]) == (0.0, None, None)
        assert category_score([], [ECONOMY]) == (0.0, None, None)

    def test_keyword_match_uses_union_of_vocabularies(self):
        crime = ProfileSnapshot(id="2", category="Crime", keyword_weights={'police': 1.0})
        score = keyword_match_score(['economy', 'police', 'weather', 'today'], [ECONOMY, crime])
        # 12.5 rounds half up
        assert score == 13.0

    def test_source_score_monotonic_and_saturating(self):
        scores = [source_score(n) for n in range(0, 6)]
        assert scores == sorted(scores)
        assert source_score(1) == 5.0
        assert source_score(3) == 15.0
        assert source_score(5) == 15.0

    def test_recency_decays_to_zero(self):
        assert recency_score(NOW, NOW) == 15.0
        assert recency_score(NOW - timedelta(hours=6), NOW) == 8.0
        assert recency_score(NOW - timedelta(hours=12), NOW) == 0.0
        assert recency_score(NOW - timedelta(hours=13), NOW) == 0.0
        assert recency_score(None, NOW) == 15.0

    def test_recency_never_increases_with_age(self):
        ages = [0, 1, 6, 11.9, 12, 13, 24, 48]
        scores = [recency_score(NOW - timedelta(hours=h), NOW) for h in ages]
        assert scores == sorted(scores, reverse=True)

    def test_exemplar_bonus_is_max_not_sum(self):
        keywords = ['tariff', 'trade', 'china', 'steel', 'jobs']
        # +3 category, 2 topics -> +4, keyword deltas 15 * 0.2 -> +3
        first = ExemplarSnapshot(
            category="Economy",
            topics=('tariff', 'trade'),
            keywords={'china': 10.0, 'steel': 5.0},
            similar_to_categories=('Economy',),
        )
        # 4 topics -> +8, keyword deltas 10 * 0.2 -> +2
        second = ExemplarSnapshot(
            category="Trade",
            topics=('tariff', 'trade', 'china', 'steel'),
            keywords={'jobs': 10.0},
            similar_to_categories=('Trade',),
        )
        assert exemplar_bonus(keywords, "Economy", [first]) == pytest.approx(10.0)
        assert exemplar_bonus(keywords, "Economy", [second]) == pytest.approx(10.0)
        assert exemplar_bonus(keywords, "Economy", [first, second]) == pytest.approx(10.0)

    def test_exemplar_bonus_caps(self):
        big = ExemplarSnapshot(
            category="Economy",
            topics=('a1111', 'b2222', 'c3333', 'd4444', 'e5555'),
            keywords={'a1111': 100.0},
            similar_to_categories=('Economy',),
        )
        keywords = ['a1111', 'b2222', 'c3333', 'd4444', 'e5555']
        # 3 + 8 (topic cap) + 4 (keyword cap)
        assert exemplar_bonus(keywords, "Economy", [big]) == 15.0

    def test_exemplar_bonus_without_exemplars(self):
        assert exemplar_bonus(['economy'], "Economy", []) == 0.0


class TestVelocity:

    def test_absent_signals(self):
        assert velocity_blend(None) == 0.0
        assert velocity_blend(PlatformSignals()) == 0.0
        assert velocity_score(None) == (0.0, False)

    def test_social_blend(self):
        signals = PlatformSignals.model_validate(
            {'social': {'heat': 90, 'volume': 15000, 'velocity': 'rising'}}
        )
        # 0.54 + 0.3 + 0.1
        assert velocity_blend(signals) == pytest.approx(0.94)
        score, high = velocity_score(signals)
        # 14.1 rounds to a whole point
        assert score == 14.0
        assert high is True

    def test_aggregator_and_trends(self):
        signals = PlatformSignals.model_validate({
            'aggregator': {'score': 2500, 'velocity': 5},
            'trends': {'traffic_volume': '200K+'},
        })
        # 0.125 + 0.075 + 0.1
        assert velocity_blend(signals) == pytest.approx(0.3)
        millions = PlatformSignals.model_validate({'trends': {'traffic_volume': '2M+'}})
        assert velocity_blend(millions) == pytest.approx(0.2)

    def test_blend_clamped_to_one(self):
        signals = PlatformSignals.model_validate({
            'social': {'heat': 100, 'volume': 50000, 'velocity': 'rising'},
            'aggregator': {'score': 9000, 'velocity': 30},
            'trends': {'traffic_volume': '5M+'},
        })
        assert velocity_blend(signals) == 1.0

    def test_monotonic_in_heat_and_volume(self):
        heats = [velocity_blend(PlatformSignals.model_validate({'social': {'heat': h}})) for h in (0, 20, 50, 80, 100)]
        assert heats == sorted(heats)
        volumes = [velocity_blend(PlatformSignals.model_validate({'social': {'volume': v}})) for v in (0, 1000, 10000, 20000)]
        assert volumes == sorted(volumes)

    def test_flat_lookup_shape_read_as_social(self):
        signals = PlatformSignals.model_validate({'heat': 90, 'volume': 15000, 'velocity': 'rising'})
        assert signals.social.heat == 90
        assert signals.social.velocity == 'rising'
        assert velocity_blend(signals) == pytest.approx(0.94)

    def test_feed_names_map_to_groups(self):
        signals = PlatformSignals.model_validate({
            'x': {'heat': 50, 'tweetVolume': 10000},
            'reddit': {'score': 5000, 'velocity': 10, 'numComments': 3},
            'googleTrends': {'trafficVolume': '2M+'},
        })
        assert signals.social.volume == 10000
        assert signals.aggregator.num_comments == 3
        assert signals.trends.traffic_volume == '2M+'
        assert signals.to_json()['social'] == {'heat': 50, 'volume': 10000}
        assert velocity_blend(signals) == 1.0

    def test_unknown_signal_keys_dropped(self):
        signals = PlatformSignals.model_validate({'mastodon': {'boosts': 40}, 'social': {'heat': 40}})
        assert signals.to_json() == {'social': {'heat': 40}}

    def test_out_of_range_signals_clamped(self):
        signals = PlatformSignals.model_validate({'social': {'heat': 120, 'volume': -5}})
        assert velocity_blend(signals) == pytest.approx(0.6)

    def test_invalid_group_dropped_alone(self):
        signals = PlatformSignals.model_validate({
            'social': {'heat': 'very hot'},
            'trends': {'traffic_volume': '200K+'},
        })
        assert signals.social is None
        assert velocity_blend(signals) == pytest.approx(0.1)

    def test_config_thresholds_are_tunable(self):
        signals = PlatformSignals.model_validate({'social': {'heat': 50}})
        assert velocity_score(signals)[1] is False
        assert velocity_score(signals, VelocityConfig(high_velocity_threshold=0.3))[1] is True


class TestAlertLevel:

    def test_boundary_without_velocity_is_dashboard(self):
        assert classify_alert(85.0, False) == AlertLevel.DASHBOARD

    def test_boundary_with_velocity_is_telegram(self):
        assert classify_alert(85.0, True) == AlertLevel.TELEGRAM
        assert classify_alert(84.99, True) == AlertLevel.DASHBOARD

    def test_dashboard_and_none(self):
        assert classify_alert(40.0, False) == AlertLevel.DASHBOARD
        assert classify_alert(39.99, True) == AlertLevel.NONE


class TestScoreStory:

    def test_telegram_scenario(self):
        signals = PlatformSignals.model_validate(
            {'social': {'heat': 90, 'volume': 15000, 'velocity': 'rising'}}
        )
        result = score_story(make_candidate(signals=signals), [ECONOMY], [], now=NOW)

        assert result.editorial_adjustment == 10.0
        assert result.is_high_velocity is True
        assert result.total_score >= 85
        assert result.alert_level == AlertLevel.TELEGRAM
        assert result.matched_category == "Economy"
        # 30 + 25 + 5 + 15 + 10
        assert result.relevance_score == 85.0

    def test_telegram_scenario_with_flat_lookup_signals(self):
        candidate = StoryCandidate.model_validate({
            'headline': "Trump Economy Soars to Record Highs",
            'source_url': "https://example.com/a",
            'sources': [{'name': "Outlet", 'url': "https://outlet.example/a"}],
            'platform_signals': {'heat': 90, 'volume': 15000, 'velocity': 'rising'},
            'first_seen_at': NOW,
        })

        result = score_story(candidate, [ECONOMY], [], now=NOW)

        assert result.is_high_velocity is True
        assert result.velocity_score == 14.0
        assert result.total_score == 99.0
        assert result.alert_level == AlertLevel.TELEGRAM

    def test_out_of_range_signal_keeps_candidate(self):
        candidate = StoryCandidate.model_validate({
            'headline': "Refinery explosion",
            'source_url': "https://example.com/refinery",
            'platform_signals': {'social': {'heat': 120}, 'aggregator': {'score': 'lots'}},
        })

        assert candidate.platform_signals.aggregator is None
        result = score_story(candidate, [], [], now=NOW, stance=NeutralStance())
        # heat clamps to 100 -> 0.6 * 15
        assert result.velocity_score == 9.0
        assert result.is_high_velocity is True

    def test_terms_rounded_before_alert_threshold(self):
        energy = ProfileSnapshot(id="4", category="Energy", keyword_weights={'refinery': 5.0})
        signals = PlatformSignals.model_validate({
            'social': {'heat': 100, 'velocity': 'rising'},
            'trends': {'traffic_volume': '200K+'},
        })
        candidate = make_candidate(headline="Refinery explosion", n_sources=3, signals=signals)

        result = score_story(candidate, [energy], [], now=NOW, stance=NeutralStance())

        # keyword match 12.5 rounds to 13, so 30 + 13 + 15 + 15 and 12 velocity reach 85
        assert result.keyword_match_score == 13.0
        assert result.relevance_score == 73.0
        assert result.velocity_score == 12.0
        assert result.total_score == 85.0
        assert result.alert_level == AlertLevel.TELEGRAM

    def test_round_points_is_half_up(self):
        assert round_points(0.5) == 1.0
        assert round_points(2.5) == 3.0
        assert round_points(14.1) == 14.0
        assert round_points(0.0) == 0.0

    def test_high_relevance_without_velocity_stays_on_dashboard(self):
        candidate = make_candidate(n_sources=3)
        result = score_story(candidate, [ECONOMY], [], now=NOW)
        assert result.relevance_score >= 85
        assert result.is_high_velocity is False
        assert result.alert_level == AlertLevel.DASHBOARD

    def test_scores_bounded(self):
        signals = PlatformSignals.model_validate({
            'social': {'heat': 100, 'volume': 90000, 'velocity': 'rising'},
            'aggregator': {'score': 90000, 'velocity': 90},
            'trends': {'traffic_volume': '9M+'},
        })
        exemplar = ExemplarSnapshot(
            category="Economy",
            topics=('trump', 'economy', 'soars', 'record'),
            keywords={'highs': 50.0},
            similar_to_categories=('Economy',),
        )
        high = score_story(make_candidate(n_sources=5, signals=signals), [ECONOMY], [exemplar], now=NOW)
        assert 0 <= high.relevance_score <= 100
        assert 0 <= high.total_score <= 100

        low = score_story(
            make_candidate(headline="Trump indicted", n_sources=0, first_seen_at=NOW - timedelta(days=3)),
            [], [], now=NOW,
        )
        assert low.relevance_score == 0.0
        assert low.total_score == 0.0
        assert low.alert_level == AlertLevel.NONE

    def test_missing_inputs_degrade_to_zero(self):
        candidate = StoryCandidate(headline="!!!", source_url="https://example.com/x")
        result = score_story(candidate, [], [], now=NOW, stance=NeutralStance())
        assert result.keywords == []
        assert result.category_score == 0.0
        assert result.velocity_score == 0.0
        # only recency (unknown age counts as new)
        assert result.relevance_score == 15.0

    def test_more_sources_never_lower_relevance(self):
        results = [
            score_story(make_candidate(n_sources=n), [ECONOMY], [], now=NOW).relevance_score
            for n in (1, 2, 3)
        ]
        assert results == sorted(results)

    def test_breakdown_to_dict(self):
        result = score_story(make_candidate(), [ECONOMY], [], now=NOW)
        data = result.to_dict()
        assert data['alert_level'] in ('NONE', 'DASHBOARD', 'TELEGRAM')
        assert data['keywords'] == ['trump', 'economy', 'soars', 'record', 'highs']
        assert 'velocity_raw' in data
