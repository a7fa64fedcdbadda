import pytest

from libs.flowguard.flow import FlowConfig, compute_flow_signal, compute_flow_signals, filter_unusual, is_unusual


class TestClassification:
    def test_volume_ratio_threshold(self, activity):
        assert is_unusual(activity(premium=1_000, volume=500, open_interest=100))
        assert not is_unusual(activity(premium=1_000, volume=499, open_interest=100))

    def test_large_premium_alone_is_unusual(self, activity):
        assert is_unusual(activity(premium=100_000, volume=1, open_interest=1_000))

    def test_zero_open_interest_uses_floor_of_one(self, activity):
        assert is_unusual(activity(premium=10, volume=5, open_interest=0))
        assert not is_unusual(activity(premium=10, volume=4, open_interest=0))

    def test_custom_thresholds(self, activity):
        cfg = FlowConfig(large_premium_usd=1_000_000)
        assert not is_unusual(activity(premium=500_000, volume=1, open_interest=1_000), cfg)

    def test_filter_keeps_only_unusual(self, activity):
        batch = [activity(premium=150_000), activity(premium=10, volume=1, open_interest=100)]
        assert filter_unusual(batch) == batch[:1]

    def test_volume_ratio_follows_configured_threshold(self, activity):
        rec = activity(premium=10, volume=60, open_interest=10)
        assert rec.volume_ratio == pytest.approx(6.0)
        assert is_unusual(rec)
        assert not is_unusual(rec, FlowConfig(unusual_volume_ratio=8))


class TestSignal:
    def test_calls_only_gives_no_signal(self, activity):
        recs = [activity(option_type="CALL", premium=600_000)]
        assert compute_flow_signal("AAPL", recs) is None

    def test_no_premium_gives_no_signal(self):
        assert compute_flow_signal("AAPL", []) is None

    def test_bullish_confidence_is_ratio_over_ten(self, activity):
        recs = [activity(option_type="CALL", premium=2_000_000),
                activity(option_type="PUT", premium=500_000)]
        sig = compute_flow_signal("AAPL", recs)
        assert sig.direction == "BULLISH"
        assert sig.call_put_ratio == pytest.approx(4.0)
        assert sig.confidence == pytest.approx(0.4)
        assert sig.total_premium == pytest.approx(2_500_000)
        assert sig.timeframe == "1-3 days"

    def test_bullish_confidence_capped(self, activity):
        recs = [activity(option_type="CALL", premium=600_000),
                activity(option_type="PUT", premium=1)]
        sig = compute_flow_signal("AAPL", recs)
        assert sig.direction == "BULLISH"
        assert sig.confidence == pytest.approx(0.9)

    def test_bullish_needs_minimum_call_premium(self, activity):
        recs = [activity(option_type="CALL", premium=400_000),
                activity(option_type="PUT", premium=10_000)]
        assert compute_flow_signal("AAPL", recs) is None

    def test_bearish(self, activity):
        recs = [activity(option_type="CALL", premium=150_000),
                activity(option_type="PUT", premium=600_000)]
        sig = compute_flow_signal("TSLA", recs)
        assert sig.direction == "BEARISH"
        assert sig.call_put_ratio == pytest.approx(0.25)
        assert sig.confidence == pytest.approx(0.4)

    def test_neutral_ratio_gives_nothing(self, activity):
        recs = [activity(option_type="CALL", premium=1_000_000),
                activity(option_type="PUT", premium=1_000_000)]
        assert compute_flow_signal("SPY", recs) is None

    def test_signals_sorted_by_confidence(self, activity):
        history = {
            "AAPL": [activity(symbol="AAPL", option_type="CALL", premium=2_000_000),
                     activity(symbol="AAPL", option_type="PUT", premium=500_000)],
            "NVDA": [activity(symbol="NVDA", option_type="CALL", premium=4_000_000),
                     activity(symbol="NVDA", option_type="PUT", premium=500_000)],
            "SPY": [activity(symbol="SPY", option_type="CALL", premium=200_000)],
        }
        sigs = compute_flow_signals(history)
        assert [s.symbol for s in sigs] == ["NVDA", "AAPL"]
        assert sigs[0].confidence >= sigs[1].confidence
