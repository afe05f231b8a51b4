"""Tests for the Platt scaling transform."""

import math
from datetime import datetime, timezone

import pytest

from furlong.calibration.platt import (
    MAX_CALIBRATED,
    MIN_CALIBRATED,
    PlattParameters,
    calibrate_field,
    calibrate_probability,
    calibration_bounds,
    clamp_and_redistribute,
    deserialize_parameters,
    identity_parameters,
    is_identity,
    logit,
    serialize_parameters,
    sigmoid,
    validate_parameters,
)


class TestLogitSigmoid:
    @pytest.mark.parametrize("p", [0.01, 0.2, 0.5, 0.73, 0.99])
    def test_inverse(self, p):
        assert sigmoid(logit(p)) == pytest.approx(p)

    def test_logit_clamps_edges(self):
        assert logit(0.0) == logit(0.001)
        assert logit(1.0) == logit(0.999)
        assert math.isfinite(logit(float("nan")))

    def test_sigmoid_extremes(self):
        assert sigmoid(1000) == 1.0
        assert sigmoid(-1000) == 0.0
        assert sigmoid(0) == 0.5
        assert sigmoid(float("nan")) == 0.5


class TestCalibrateProbability:
    def test_identity_is_noop(self):
        params = identity_parameters()
        assert is_identity(params)
        for p in (0.05, 0.3, 0.6, 0.9):
            assert calibrate_probability(p, params) == pytest.approx(p)

    def test_output_bounds(self):
        params = PlattParameters(a=3.0, b=0.0)
        assert calibrate_probability(0.999, params) == MAX_CALIBRATED
        assert calibrate_probability(0.001, params) == MIN_CALIBRATED

    def test_non_finite_input(self):
        assert calibrate_probability(float("nan"), identity_parameters()) == MIN_CALIBRATED
        assert calibrate_probability(float("inf"), identity_parameters()) == MIN_CALIBRATED

    def test_a_below_one_pulls_toward_half(self):
        params = PlattParameters(a=0.5, b=0.0)
        assert 0.3 < calibrate_probability(0.3, params) < 0.5
        assert 0.5 < calibrate_probability(0.8, params) < 0.8

    def test_positive_b_shifts_up(self):
        assert calibrate_probability(0.3, PlattParameters(a=1.0, b=0.5)) > 0.3


class TestCalibrateField:
    def test_empty(self):
        assert calibrate_field([], identity_parameters()) == []

    def test_single_runner_is_certain(self):
        assert calibrate_field([0.3], PlattParameters(a=0.7, b=-0.2)) == [1.0]

    @pytest.mark.parametrize("params", [
        identity_parameters(),
        PlattParameters(a=0.6, b=-0.3),
        PlattParameters(a=1.8, b=0.4),
    ])
    def test_sums_to_one_and_keeps_order(self, params):
        raw = [0.42, 0.25, 0.15, 0.1, 0.05, 0.03]
        out = calibrate_field(raw, params)
        assert sum(out) == pytest.approx(1.0, abs=1e-4)
        assert out == sorted(out, reverse=True)

    def test_identity_stays_close(self):
        raw = [0.5, 0.3, 0.2]
        out = calibrate_field(raw, identity_parameters())
        for before, after in zip(raw, out):
            assert abs(before - after) < 0.1


class TestClampAndRedistribute:
    def test_in_range_untouched(self):
        assert clamp_and_redistribute([0.5, 0.3, 0.2]) == pytest.approx([0.5, 0.3, 0.2])

    def test_low_values_raised(self):
        out = clamp_and_redistribute([0.9, 0.098, 0.001, 0.001])
        assert min(out) >= MIN_CALIBRATED - 1e-9
        assert sum(out) == pytest.approx(1.0, abs=1e-4)
        assert out[0] > out[1] > out[2]

    def test_everything_pinned(self):
        out = clamp_and_redistribute([0.999, 0.0005, 0.0005])
        assert sum(out) == pytest.approx(1.0)
        assert out[0] > out[1]

    def test_stops_after_max_passes(self):
        # Raising the two tiny values pulls the third just under the floor
        field = [0.5, 0.49479, 0.00501, 0.0001, 0.0001]
        out = clamp_and_redistribute(field, max_passes=1)
        assert sum(out) == pytest.approx(1.0, abs=1e-4)
        assert out[2] < MIN_CALIBRATED
        assert out[3] == pytest.approx(MIN_CALIBRATED)

    def test_extra_passes_settle_knock_on_clamps(self):
        out = clamp_and_redistribute([0.5, 0.49479, 0.00501, 0.0001, 0.0001])
        assert min(out) >= MIN_CALIBRATED - 1e-6
        assert max(out) <= MAX_CALIBRATED
        assert sum(out) == pytest.approx(1.0, abs=1e-4)

    def test_empty(self):
        assert clamp_and_redistribute([]) == []


class TestSerialization:
    def test_round_trip(self):
        params = PlattParameters(
            a=0.84, b=-0.12,
            fitted_at=datetime(2024, 5, 4, 12, 0, tzinfo=timezone.utc),
            races_used=612, brier_score=0.081, log_loss=0.29,
        )
        data = serialize_parameters(params)
        assert data["fitted_at"] == "2024-05-04T12:00:00+00:00"
        assert deserialize_parameters(data) == params

    def test_naive_timestamp_treated_as_utc(self):
        params = deserialize_parameters({"a": 1, "b": 0, "fitted_at": "2024-05-04T12:00:00"})
        assert params.fitted_at.tzinfo == timezone.utc
        assert params.races_used == 0

    def test_zulu_suffix(self):
        params = deserialize_parameters({"a": 1, "b": 0, "fitted_at": "2024-05-04T12:00:00Z"})
        assert params.fitted_at.hour == 12

    @pytest.mark.parametrize("data", [
        {"a": 1.0},
        {"a": "x", "b": 0, "fitted_at": "2024-05-04"},
        {"a": 1, "b": 0, "fitted_at": "yesterday"},
    ])
    def test_unreadable(self, data):
        assert deserialize_parameters(data) is None


class TestValidateParameters:
    def test_sane(self):
        assert validate_parameters(PlattParameters(a=0.9, b=0.1, brier_score=0.08, log_loss=0.3)) == []

    def test_negative_a(self):
        errors = validate_parameters(PlattParameters(a=-0.5, b=0.0))
        assert any("negative" in e for e in errors)

    def test_non_finite(self):
        errors = validate_parameters(PlattParameters(a=math.nan, b=math.inf))
        assert "Parameter A is not finite" in errors
        assert "Parameter B is not finite" in errors

    def test_extreme(self):
        errors = validate_parameters(PlattParameters(a=12.0, b=-11.0))
        assert len(errors) == 2

    def test_bad_scores(self):
        errors = validate_parameters(PlattParameters(a=1.0, b=0.0, brier_score=1.5, log_loss=-1))
        assert len(errors) == 2

    def test_bounds(self):
        bounds = calibration_bounds()
        assert bounds["min_output"] == MIN_CALIBRATED
        assert bounds["max_input"] == 0.999
