"""
Tests for services/combo_optimizer.py

Run with: pytest tests/test_combo_optimizer.py -v
"""

import math

import numpy as np
import pytest

from combo_edge.core.engine_config import EngineConfig
from combo_edge.exceptions import NoQualifyingComboError
from combo_edge.schemas import Candidate, QualityFilter
from combo_edge.services.calibration import CalibrationContext
from combo_edge.services.combo_optimizer import (
    LegView,
    _fse_factor,
    allocate_cash,
    anchor_leg,
    build_covariance,
    confidence_surplus,
    context_lift,
    enumerate_subsets,
    ensure_coverage,
    generate_recommendations,
    layer_for_rank,
    leg_probability,
    max_weight_for,
    mmr_rerank,
    pair_correlation,
    parlay_bonus,
    project_capped_simplex,
    rebalance_match_concentration,
    score_combo,
    source_correlation,
    surplus_bonus,
)


def _cand(cid, conf=0.6, odds=2.0, **kw):
    return Candidate(id=cid, confidence=conf, odds=odds, **kw)


def _slate(n=6):
    confs = [0.62, 0.58, 0.55, 0.66, 0.52, 0.6, 0.57, 0.64, 0.5, 0.61, 0.59, 0.63]
    odds = [1.9, 2.1, 2.3, 1.75, 2.4, 2.0, 2.2, 1.8, 2.5, 1.95, 2.05, 1.85]
    return [_cand(f"c{i}", confs[i], odds[i], source_id=f"s{i % 3}") for i in range(n)]


def _view(cid, p=0.6, odds=2.0, source_id=None):
    return LegView(_cand(cid, source_id=source_id), p, odds)


class TestLegProbability:
    """Test the context lift and leg probability."""

    def test_neutral_context_is_one(self):
        assert context_lift(_cand("a"), EngineConfig.default()) == pytest.approx(1.0)

    def test_mode_factors_order(self):
        cfg = EngineConfig.default()
        ctx = CalibrationContext.not_ready()
        stable = leg_probability(_cand("a", mode="stable"), cfg, ctx)
        regular = leg_probability(_cand("a"), cfg, ctx)
        gamble = leg_probability(_cand("a", mode="gamble"), cfg, ctx)
        assert gamble < regular < stable

    def test_fse_needs_both_sides(self):
        cfg = EngineConfig.default()
        one_sided = _cand("a", fse_home=1.0)
        both = _cand("a", fse_home=1.0, fse_away=1.0)
        assert context_lift(one_sided, cfg) == pytest.approx(1.0)
        assert context_lift(both, cfg) == pytest.approx(1.12 ** cfg.weight_fse)

    def test_clamped(self):
        cfg = EngineConfig.default()
        ctx = CalibrationContext.not_ready()
        hot = _cand("a", conf=0.99, mode="insurance", tys_home="H", tys_away="H", fid=0.75)
        assert leg_probability(hot, cfg, ctx) <= 0.95
        assert leg_probability(_cand("b", conf=0.01), cfg, ctx) >= 0.05

    def test_learned_form_multiplier_inside_clamp(self):
        assert _fse_factor(1.0, 1.0, 1.1) == pytest.approx(1.12 * 1.1)
        assert _fse_factor(1.0, 1.0, 1.25) == pytest.approx(1.35)
        assert _fse_factor(0.05, 0.05, 0.75) == pytest.approx(0.72)
        assert _fse_factor(None, 1.0, 1.25) == 1.0

    def test_form_multiplier_reaches_context_lift(self):
        cfg = EngineConfig.default()
        both = _cand("a", fse_home=1.0, fse_away=1.0)
        assert context_lift(both, cfg, 1.1) == pytest.approx((1.12 * 1.1) ** cfg.weight_fse)

    def test_conf_multiplier_scales_raw_confidence_when_not_ready(self):
        cfg = EngineConfig.default()
        ctx = CalibrationContext.not_ready(conf_multiplier=0.8)
        assert leg_probability(_cand("a", conf=0.6), cfg, ctx) == pytest.approx(0.48)

    def test_form_multiplier_used_by_leg_probability(self):
        cfg = EngineConfig.default()
        ctx = CalibrationContext.not_ready(fse_multiplier=1.1)
        leg = _cand("a", conf=0.6, fse_home=1.0, fse_away=1.0)
        assert leg_probability(leg, cfg, ctx) == pytest.approx(0.6 * (1.12 * 1.1) ** cfg.weight_fse)


class TestEnumeration:
    def test_depth_first_order(self):
        assert enumerate_subsets(3, 2) == [(0,), (0, 1), (0, 2), (1,), (1, 2), (2,)]

    def test_count_for_full_slate(self):
        expected = sum(math.comb(12, k) for k in range(1, 6))
        assert len(enumerate_subsets(12, 5)) == expected

    def test_no_duplicates(self):
        subsets = enumerate_subsets(6, 4)
        assert len(subsets) == len(set(subsets))


class TestScoring:
    def test_single_leg_metrics(self):
        combo = score_combo([_view("a", 0.6, 2.0)], alpha=0.5)
        assert combo.expected_value == pytest.approx(0.2)
        assert combo.variance == pytest.approx(0.6 * 0.4 * 4.0)
        assert combo.sharpe == pytest.approx(0.2 / math.sqrt(0.96))
        assert combo.utility == pytest.approx(0.5 * 0.2 - 0.5 * math.sqrt(0.96))

    def test_joint_probability_multiplies(self):
        combo = score_combo([_view("a", 0.6, 2.0), _view("b", 0.5, 3.0)], alpha=0.5)
        assert combo.joint_probability == pytest.approx(0.3)
        assert combo.combined_odds == pytest.approx(6.0)

    def test_source_correlation(self):
        assert source_correlation([_view("a")]) == 0.0
        assert source_correlation([_view("a", source_id="t"), _view("b", source_id="t")]) == pytest.approx(1.0)
        assert source_correlation([_view("a"), _view("b")]) == pytest.approx(0.0)


class TestCovariance:
    def test_pair_correlation(self):
        assert pair_correlation(["a"], ["b"]) == pytest.approx(0.1)
        assert pair_correlation(["a"], ["a"]) == pytest.approx(0.92)
        assert pair_correlation(["a", "b"], ["a", "c"]) == pytest.approx(0.1 + 0.29 + 0.08)

    def test_matrix_is_symmetric_with_variance_diagonal(self):
        combos = [
            score_combo([_view("a")], 0.5),
            score_combo([_view("b")], 0.5),
            score_combo([_view("a"), _view("b")], 0.5),
        ]
        cov = build_covariance(combos)
        assert np.allclose(cov, cov.T)
        assert np.allclose(np.diag(cov), [c.variance for c in combos])
        assert cov[0, 1] == pytest.approx(0.1 * math.sqrt(combos[0].variance * combos[1].variance))


class TestProjection:
    def test_sums_to_one_within_cap(self):
        w = project_capped_simplex(np.array([0.9, 0.5, -0.2, 0.1]), 0.4)
        assert w.sum() == pytest.approx(1.0)
        assert w.max() <= 0.4 + 1e-9
        assert w.min() >= 0.0

    def test_cap_raised_when_infeasible(self):
        w = project_capped_simplex(np.array([1.0, 0.0]), 0.3)
        assert w == pytest.approx([0.5, 0.5])

    @pytest.mark.parametrize("alpha,expected", [(0.0, 0.32), (0.5, 0.545), (1.0, 0.77)])
    def test_max_weight(self, alpha, expected):
        assert max_weight_for(alpha) == pytest.approx(expected)


class TestAllocation:
    def test_largest_remainder(self):
        assert allocate_cash([0.5, 0.3, 0.2], 72, 10) == [40.0, 20.0, 10.0]

    def test_min_active(self):
        assert allocate_cash([0.5, 0.3, 0.2], 72, 10, min_active=3) == [30.0, 20.0, 20.0]

    def test_cap_below_unit(self):
        assert allocate_cash([0.6, 0.4], 9, 10) == [0.0, 0.0]

    def test_zero_weights_fund_first(self):
        assert allocate_cash([0.0, 0.0], 50, 10) == [10.0, 0.0]

    def test_precision_unit(self):
        out = allocate_cash([0.7, 0.3], 72, 1)
        assert sum(out) == pytest.approx(72.0)
        assert all(float(v).is_integer() for v in out)


class TestCoverage:
    def test_injects_missing_leg(self):
        a = score_combo([_view("a")], 0.5)
        b = score_combo([_view("b")], 0.5)
        c = score_combo([_view("c")], 0.5)
        rows, uncovered = ensure_coverage([a], [a, b, c], ["a", "b", "c"], max_rows=5, seed_quota=1)
        assert uncovered == 0
        assert {r.signature for r in rows} == {"a", "b", "c"}
        assert b.coverage_injected and c.coverage_injected
        assert not a.coverage_injected

    def test_reports_uncoverable(self):
        a = score_combo([_view("a")], 0.5)
        _, uncovered = ensure_coverage([a], [a], ["a", "z"], max_rows=5)
        assert uncovered == 1


class TestLayers:
    @pytest.mark.parametrize("rank,layer", [(1, "primary"), (2, "secondary"), (3, "secondary"), (4, "tail")])
    def test_layer_for_rank(self, rank, layer):
        assert layer_for_rank(rank) == layer


class TestGenerateRecommendations:
    """End-to-end recommendation scenarios."""

    def test_single_candidate(self):
        result = generate_recommendations([_cand("a", 0.6, 2.0)], risk_preference=50)
        assert len(result.recommendations) == 1
        rec = result.recommendations[0]
        assert rec.expected_value == pytest.approx(0.2)
        assert rec.cash_amount == pytest.approx(70.0)
        assert rec.layer == "primary"
        assert rec.kelly_stake == pytest.approx(30.0)
        assert result.total_cash == pytest.approx(70.0)
        assert result.raw_weights == pytest.approx([1.0])

    def test_strict_filter_with_nothing_qualifying_raises(self):
        with pytest.raises(NoQualifyingComboError) as excinfo:
            generate_recommendations(
                _slate(4),
                quality_filter=QualityFilter(min_win_rate=0.99),
                strategy="threshold_strict",
            )
        assert excinfo.value.details["candidate_combos"] == 15

    def test_manual_coverage_falls_back_to_all(self):
        result = generate_recommendations(
            _slate(4), quality_filter=QualityFilter(min_win_rate=0.99), strategy="manual_coverage"
        )
        assert result.recommendations
        assert result.diagnostics["qualified_combos"] == 0

    def test_identical_candidates_are_diversified(self):
        cands = [_cand("x", 0.6, 2.0), _cand("y", 0.6, 2.0)]
        result = generate_recommendations(cands, risk_preference=50)
        assert pair_correlation(["x"], ["y"]) >= 0.1
        assert len(result.raw_weights) == 3
        assert all(w < 1.0 for w in result.raw_weights)
        assert sum(result.raw_weights) == pytest.approx(1.0)

    def test_cash_respects_risk_cap(self):
        cfg = EngineConfig.default()
        result = generate_recommendations(_slate(8), risk_preference=70, config=cfg)
        assert result.total_cash <= cfg.risk_cap
        assert result.total_cash == pytest.approx(70.0)
        assert all(r.cash_amount % 10 == 0 for r in result.recommendations)
        assert all(r.cash_amount > 0 for r in result.recommendations)
        assert len(result.recommendations) <= cfg.max_recommendations

    def test_precision_mode_uses_unit_one(self):
        result = generate_recommendations(_slate(6), risk_cap=55, allocation_mode="precision")
        assert result.total_cash == pytest.approx(55.0)
        assert result.allocation_unit == 1

    def test_weights_respect_alpha_cap(self):
        for pref in (0, 50, 100):
            result = generate_recommendations(_slate(6), risk_preference=pref)
            assert max(result.raw_weights) <= max_weight_for(pref / 100.0) + 1e-9

    def test_every_candidate_covered_before_allocation(self):
        cands = _slate(5) + [_cand("weak", 0.12, 1.3)]
        result = generate_recommendations(cands, risk_cap=1000, allocation_mode="precision")
        assert result.diagnostics["uncovered_before_allocation"] == 0
        funded_legs = {leg for r in result.recommendations for leg in r.leg_ids}
        assert "weak" in funded_legs

    def test_ranks_and_layers(self):
        result = generate_recommendations(_slate(6), risk_cap=200)
        ranks = [r.rank for r in result.recommendations]
        assert ranks == list(range(1, len(ranks) + 1))
        assert result.recommendations[0].layer == "primary"
        summary = {row["layer"]: row for row in result.layer_summary}
        assert summary["primary"]["count"] == 1
        assert sum(row["total_cash"] for row in result.layer_summary) == pytest.approx(result.total_cash)

    def test_deterministic(self):
        a = generate_recommendations(_slate(7), risk_preference=35)
        b = generate_recommendations(_slate(7), risk_preference=35)
        assert a.to_dict() == b.to_dict()

    def test_empty_candidates(self):
        result = generate_recommendations([])
        assert result.recommendations == []
        assert result.total_cash == 0.0

    def test_too_many_candidates(self):
        with pytest.raises(ValueError):
            generate_recommendations(_slate(12) + [_cand("extra")])

    def test_duplicate_ids(self):
        with pytest.raises(ValueError):
            generate_recommendations([_cand("a"), _cand("a")])

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            generate_recommendations(_slate(2), strategy="yolo")

    def test_leg_probabilities_exposed(self):
        result = generate_recommendations(_slate(3))
        assert set(result.leg_probabilities) == {"c0", "c1", "c2"}


def _leg(cid, conf, p=0.6, odds=2.0):
    return LegView(_cand(cid, conf=conf), p, odds)


def _combo(*ids):
    return score_combo([_view(i) for i in ids], 0.5)


class TestStructuralBonuses:
    """Test the parlay and confidence-surplus bonuses."""

    @pytest.mark.parametrize("legs,expected", [(1, 0.0), (2, 0.12 * 0.85), (5, 0.12 * 1.85)])
    def test_parlay_bonus(self, legs, expected):
        assert parlay_bonus(legs, 0.12) == pytest.approx(expected)

    def test_confidence_surplus_removes_vig(self):
        assert confidence_surplus(0.45, 3.2, 0.05) == pytest.approx(0.45 - 0.95 / 3.2)

    @pytest.mark.parametrize("surpluses,expected", [
        ([0.05, 0.05], 0.0075),
        ([0.15], 0.15 * 0.15 + 0.03),
        ([-1.0], -0.08),
        ([], 0.0),
    ])
    def test_surplus_bonus(self, surpluses, expected):
        assert surplus_bonus(surpluses, 0.15) == pytest.approx(expected)

    def test_bonuses_leave_utility_alone(self):
        plain = score_combo([_view("a", 0.6, 2.0)], alpha=0.5)
        shaped = score_combo([_view("a", 0.6, 2.0)], alpha=0.5, config=EngineConfig.default())
        assert plain.score == plain.utility
        assert shaped.utility == pytest.approx(plain.utility)
        assert shaped.surplus_bonus == pytest.approx(0.125 * 0.15 + 0.03)
        assert shaped.score == pytest.approx(shaped.utility + shaped.surplus_bonus)

    def test_two_legs_earn_parlay_bonus(self):
        combo = score_combo([_view("a"), _view("b")], alpha=0.5, config=EngineConfig.default())
        assert combo.parlay_bonus == pytest.approx(0.102)

    def test_underpriced_leg_outranks_fair_leg(self):
        cfg = EngineConfig.default()
        value = score_combo([_leg("v", 0.5, p=0.45, odds=3.2)], 0.5, cfg)
        fair = score_combo([_leg("f", 0.5, p=0.25, odds=3.2)], 0.5, cfg)
        assert value.surplus_bonus > 0 > fair.surplus_bonus


class TestMinLegs:
    def test_singles_dropped(self):
        cfg = EngineConfig.default().with_overrides(min_legs=2)
        result = generate_recommendations(_slate(4), config=cfg)
        assert all(r.legs >= 2 for r in result.recommendations)
        assert result.diagnostics["candidate_combos"] == 11
        assert result.diagnostics["below_min_legs_combos"] == 4
        assert result.diagnostics["min_legs_fallback"] is False

    def test_falls_back_when_nothing_is_large_enough(self):
        cfg = EngineConfig.default().with_overrides(min_legs=2)
        result = generate_recommendations([_cand("a", 0.6, 2.0)], config=cfg)
        assert [r.legs for r in result.recommendations] == [1]
        assert result.diagnostics["min_legs_fallback"] is True

    def test_min_legs_cannot_exceed_subset_size(self):
        with pytest.raises(ValueError):
            EngineConfig(min_legs=6)


class TestDiversityRerank:
    """Test the maximal-marginal-relevance rerank."""

    def test_anchor_is_highest_confidence_leg(self):
        combo = score_combo([_leg("b", 0.5), _leg("a", 0.8), _leg("c", 0.8)], 0.5)
        assert anchor_leg(combo) == "a"

    def test_spreads_the_anchor(self):
        legs = {"a": _leg("a", 0.8), "b": _leg("b", 0.5), "c": _leg("c", 0.5),
                "d": _leg("d", 0.5), "e": _leg("e", 0.5)}
        combos = [score_combo([legs[x] for x in pair], 0.5) for pair in ("ab", "ac", "de")]
        values = {"a|b": 1.0, "a|c": 0.98, "d|e": 0.96}
        out = mmr_rerank(combos, 0.55, 3, utility=lambda c: values[c.signature])
        assert [c.signature for c in out] == ["a|b", "d|e", "a|c"]

    def test_pure_order_without_overlap(self):
        combos = [_combo("a"), _combo("b"), _combo("c")]
        values = {"a": 3.0, "b": 2.0, "c": 1.0}
        out = mmr_rerank(combos, 0.55, 3, utility=lambda c: values[c.signature])
        assert [c.signature for c in out] == ["a", "b", "c"]

    def test_max_pick(self):
        combos = [_combo("a"), _combo("b"), _combo("c")]
        assert len(mmr_rerank(combos, 0.55, 2)) == 2
        assert mmr_rerank([], 0.55, 2) == []


class TestConcentrationCap:
    """Test that no candidate dominates the kept combos."""

    def test_caps_share_and_keeps_coverage(self):
        rows = [_combo("a"), _combo("a", "b"), _combo("a", "c"), _combo("a", "d"), _combo("a", "e")]
        fallback = [_combo("b"), _combo("c"), _combo("d"), _combo("e"), _combo("b", "c")]
        out, swaps = rebalance_match_concentration(rows, fallback, max_rows=5, max_share=0.6)
        assert swaps == 2
        assert [c.signature for c in out] == ["a", "a|b", "a|c", "d", "e"]
        assert sum(1 for c in out if "a" in c.leg_ids) / len(out) <= 0.6
        assert {leg for c in out for leg in c.leg_ids} == {"a", "b", "c", "d", "e"}
        assert out[3].rebalanced and out[4].rebalanced

    def test_allowance_never_below_two(self):
        rows = [_combo("a"), _combo("a", "b")]
        out, swaps = rebalance_match_concentration(rows, [_combo("b")], max_rows=5, max_share=0.1)
        assert swaps == 0
        assert [c.signature for c in out] == ["a", "a|b"]

    def test_no_replacement_keeps_rows(self):
        rows = [_combo("a"), _combo("a", "b"), _combo("a", "c"), _combo("a", "d")]
        out, swaps = rebalance_match_concentration(rows, [], max_rows=4, max_share=0.5)
        assert swaps == 0
        assert len(out) == 4

    def test_recommendations_respect_cap(self):
        result = generate_recommendations(_slate(8), risk_cap=200, allocation_mode="precision")
        assert result.diagnostics["max_leg_share"] <= 0.6
