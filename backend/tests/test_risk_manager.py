"""
Tests for Risk Manager Service

Admission checks run in a fixed order and the first failure wins.
"""

import pytest
from datetime import datetime, time, timedelta
from decimal import Decimal

from conftest import SESSION_START, make_strategy, settle
from papertrade.core.clock import IST
from papertrade.core.config import TradingSettings
from papertrade.services.risk_manager import (
    MarketSession,
    RiskLimit,
    RiskState,
    create_risk_manager,
    evaluate_admission,
)


SESSION = MarketSession()


def admit(state=RiskState(), amount="1000", now=SESSION_START, **strategy_overrides):
    return evaluate_admission(state, make_strategy(**strategy_overrides), Decimal(amount), now, SESSION)


class TestMarketSession:
    """Tests for the exchange session window."""

    def test_open_during_session(self):
        assert SESSION.is_open(SESSION_START)

    def test_boundaries_inclusive_at_minute_resolution(self):
        day = SESSION_START.date()
        assert SESSION.is_open(datetime.combine(day, time(9, 15), tzinfo=IST))
        assert SESSION.is_open(datetime.combine(day, time(15, 30, 59), tzinfo=IST))
        assert not SESSION.is_open(datetime.combine(day, time(9, 14, 59), tzinfo=IST))
        assert not SESSION.is_open(datetime.combine(day, time(15, 31), tzinfo=IST))

    def test_closed_on_weekends(self):
        saturday = SESSION_START + timedelta(days=5)
        assert saturday.weekday() == 5
        assert not SESSION.is_open(saturday)

    def test_converts_to_exchange_timezone(self):
        """04:30 UTC is 10:00 IST."""
        from zoneinfo import ZoneInfo
        utc = SESSION_START.astimezone(ZoneInfo("UTC"))
        assert SESSION.is_open(utc)

    def test_describe(self):
        assert SESSION.describe() == "09:15 - 15:30 IST"


class TestRiskState:
    """Tests for the per-strategy counters."""

    def test_with_trade_counts_losses_only(self):
        state = RiskState().with_trade(Decimal("100"), SESSION_START)
        state = state.with_trade(Decimal("-40"), SESSION_START)

        assert state.trades_today == 2
        assert state.loss_today == Decimal("40")
        assert state.last_trade_at == SESSION_START

    def test_dict_round_trip(self):
        state = RiskState(trades_today=3, loss_today=Decimal("12.50"), last_trade_at=SESSION_START)
        assert RiskState.from_dict(state.to_dict()) == state


class TestEvaluateAdmission:
    """Tests for the ordered admission checks."""

    def test_all_checks_pass(self):
        decision = admit()

        assert decision.allowed
        assert decision.checks == (
            "Strategy active",
            "Trades today: 0/10",
            "Loss today: ₹0.00/₹5000.00",
            "Trade amount: ₹1000.00/₹10000.00",
            "Cooldown: no previous trade",
            "Capital allocated: ₹100000.00",
            "Market open",
        )

    def test_inactive_strategy(self):
        decision = admit(is_active=False)
        assert not decision.allowed
        assert decision.limit == RiskLimit.STRATEGY_INACTIVE
        assert decision.reason == "Strategy is not active"
        assert decision.checks == ()

    def test_max_trades(self):
        decision = admit(state=RiskState(trades_today=10))
        assert decision.limit == RiskLimit.MAX_TRADES_PER_DAY
        assert decision.reason == "Max trades per day limit reached (10)"

    def test_max_loss(self):
        decision = admit(state=RiskState(loss_today=Decimal("5000")))
        assert decision.limit == RiskLimit.MAX_LOSS_PER_DAY
        assert decision.reason == "Max daily loss limit reached (₹5000.00)"

    def test_max_capital_per_trade(self):
        decision = admit(amount="10000.01")
        assert decision.limit == RiskLimit.MAX_CAPITAL_PER_TRADE
        assert decision.reason == (
            "Trade amount (₹10000.01) exceeds max capital per trade (₹10000.00)"
        )

    def test_amount_equal_to_limit_passes(self):
        assert admit(amount="10000").allowed

    def test_cooldown_reports_remaining_seconds(self):
        state = RiskState(trades_today=1, last_trade_at=SESSION_START - timedelta(seconds=20.5))
        decision = admit(state=state, cooldown_seconds=60)

        assert decision.limit == RiskLimit.COOLDOWN
        assert decision.reason == "Cooldown active. Wait 40s before next trade"

    def test_cooldown_elapsed(self):
        state = RiskState(trades_today=1, last_trade_at=SESSION_START - timedelta(seconds=60))
        decision = admit(state=state, cooldown_seconds=60)
        assert decision.allowed
        assert "Cooldown: 60s since last trade" in decision.checks

    def test_capital_allocated(self):
        decision = admit(amount="5000", capital_allocated=Decimal("4000"))
        assert decision.limit == RiskLimit.CAPITAL_ALLOCATED
        assert decision.reason == "Insufficient capital allocated (₹4000.00)"

    def test_market_closed(self):
        evening = SESSION_START.replace(hour=18)
        decision = admit(now=evening)
        assert decision.limit == RiskLimit.MARKET_HOURS
        assert decision.reason == "Market is closed. Trading hours: 09:15 - 15:30 IST"
        assert len(decision.checks) == 6

    def test_first_failure_wins(self):
        """Trade limit is reported even though the market is also closed."""
        decision = admit(state=RiskState(trades_today=10), now=SESSION_START.replace(hour=18))
        assert decision.limit == RiskLimit.MAX_TRADES_PER_DAY
        assert decision.checks == ("Strategy active",)


class TestRiskManager:
    """Tests for counter ownership and the daily reset."""

    def test_validate_does_not_mutate(self, risk_manager, sample_strategy):
        risk_manager.validate(sample_strategy, Decimal("1000"))
        assert risk_manager.get_state(sample_strategy.id) == RiskState()

    def test_record_advances_counters(self, risk_manager, sample_strategy, clock):
        risk_manager.record(sample_strategy.id, Decimal("-25"))

        state = risk_manager.get_state(sample_strategy.id)
        assert state.trades_today == 1
        assert state.loss_today == Decimal("25")
        assert state.last_trade_at == clock.now()

    def test_max_trades_scenario(self, risk_manager, clock):
        strategy = make_strategy(max_trades_per_day=2, cooldown_seconds=0)
        for _ in range(2):
            assert risk_manager.validate(strategy, Decimal("100")).allowed
            risk_manager.record(strategy.id, Decimal("0"))
            clock.advance(1)

        decision = risk_manager.validate(strategy, Decimal("100"))
        assert not decision.allowed
        assert decision.limit == RiskLimit.MAX_TRADES_PER_DAY

    def test_reset_strategy_counters(self, risk_manager, sample_strategy):
        risk_manager.record(sample_strategy.id, Decimal("-10"))
        risk_manager.reset_strategy_counters(sample_strategy.id)
        assert risk_manager.get_state(sample_strategy.id) == RiskState()

    def test_risk_stats(self, risk_manager, sample_strategy, clock):
        risk_manager.record(sample_strategy.id, Decimal("-10"))
        stats = risk_manager.get_risk_stats(sample_strategy.id)

        assert stats == {
            "trades_executed_today": 1,
            "daily_loss": "10",
            "last_trade_time": clock.now().isoformat(),
            "market_open": True,
        }

    @pytest.mark.asyncio
    async def test_midnight_reset(self, risk_manager, sample_strategy, clock):
        await risk_manager.start()
        risk_manager.record(sample_strategy.id, Decimal("-10"))
        await settle()

        clock.advance(3600)
        await settle()
        assert risk_manager.get_state(sample_strategy.id).trades_today == 1

        clock.set(datetime(2024, 1, 16, 0, 0, tzinfo=IST))
        await settle()
        assert risk_manager.get_state(sample_strategy.id) == RiskState()
        assert risk_manager.get_status()["last_reset"] == "2024-01-16T00:00:00+05:30"

        await risk_manager.stop()
        assert not risk_manager.get_status()["running"]

    @pytest.mark.asyncio
    async def test_emergency_stop(self, risk_manager, strategy_store, sample_strategy):
        risk_manager.record(sample_strategy.id, Decimal("-10"))

        deactivated = await risk_manager.emergency_stop()

        assert deactivated == [sample_strategy.id]
        assert not (await strategy_store.get(sample_strategy.id)).is_active
        assert risk_manager.get_state(sample_strategy.id) == RiskState()

    @pytest.mark.asyncio
    async def test_lock_is_per_strategy(self, risk_manager):
        async with risk_manager.lock("a"):
            assert risk_manager.is_locked("a")
            assert not risk_manager.is_locked("b")

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self, risk_manager):
        for strategy_id in ("a", "b", "c"):
            async with risk_manager.lock(strategy_id):
                assert risk_manager.get_status()["locked_strategies"] == 1

        assert risk_manager.get_status()["locked_strategies"] == 0
        assert not risk_manager.is_locked("a")


class TestCreateRiskManager:
    """Tests for the settings factory."""

    def test_session_from_settings(self):
        settings = TradingSettings(market_open_time="10:00", market_close_time="14:00")
        manager = create_risk_manager(settings=settings)

        assert manager.session.open == time(10, 0)
        assert manager.session.close == time(14, 0)
        assert manager.session.describe() == "10:00 - 14:00 IST"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
