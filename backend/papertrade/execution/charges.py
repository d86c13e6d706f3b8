"""
Trade Charges Calculator

Statutory charges for Indian cash-equity trades under a zero-brokerage
model:

- STT: 0.1% on delivery (both legs), 0.025% on intraday sells
- Exchange transaction charge: NSE 0.00345%, BSE 0.003%
- SEBI fee: 0.0001%
- Stamp duty: 0.015% on buys only
- GST: 18% of (brokerage + exchange charge)

Every component is rounded to paise.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

Number = Union[Decimal, int, str]

CENT = Decimal("0.01")

STT_DELIVERY = Decimal("0.001")
STT_INTRADAY_SELL = Decimal("0.00025")
EXCHANGE_RATES = {
    "NSE": Decimal("0.0000345"),
    "BSE": Decimal("0.00003"),
}
SEBI_RATE = Decimal("0.000001")
STAMP_DUTY_RATE = Decimal("0.00015")
GST_RATE = Decimal("0.18")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ChargeBreakdown:
    """Charges for one leg of a trade."""
    brokerage: Decimal = Decimal("0")
    stt: Decimal = Decimal("0")
    exchange_charge: Decimal = Decimal("0")
    sebi_charge: Decimal = Decimal("0")
    stamp_duty: Decimal = Decimal("0")
    gst: Decimal = Decimal("0")
    total: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, str]:
        return {
            "brokerage": str(self.brokerage),
            "stt": str(self.stt),
            "exchange_charge": str(self.exchange_charge),
            "sebi_charge": str(self.sebi_charge),
            "stamp_duty": str(self.stamp_duty),
            "gst": str(self.gst),
            "total": str(self.total),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChargeBreakdown":
        return cls(**{key: Decimal(str(value)) for key, value in data.items()})


@dataclass(frozen=True)
class TradeAmount:
    gross_amount: Decimal
    charges: ChargeBreakdown
    net_amount: Decimal


@dataclass(frozen=True)
class PnLBreakdown:
    """Realized P&L of a round trip, net of both legs' charges."""
    buy_value: Decimal
    sell_value: Decimal
    buy_charges: Decimal
    sell_charges: Decimal
    total_charges: Decimal
    gross_pnl: Decimal
    net_pnl: Decimal
    net_pnl_percent: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "buy_value": str(self.buy_value),
            "sell_value": str(self.sell_value),
            "buy_charges": str(self.buy_charges),
            "sell_charges": str(self.sell_charges),
            "total_charges": str(self.total_charges),
            "gross_pnl": str(self.gross_pnl),
            "net_pnl": str(self.net_pnl),
            "net_pnl_percent": str(self.net_pnl_percent),
        }


def calculate_charges(
    side: str,
    price: Number,
    quantity: int,
    exchange: str = "NSE",
    segment: str = "DELIVERY",
) -> ChargeBreakdown:
    """
    Calculate all charges for one leg.

    Args:
        side: "BUY" or "SELL"
        price: Execution price per share
        quantity: Number of shares
        exchange: "NSE" or "BSE"
        segment: "DELIVERY" or "INTRADAY"

    Returns:
        ChargeBreakdown with every component rounded to 0.01
    """
    turnover = Decimal(str(price)) * quantity

    brokerage = Decimal("0")
    stt = Decimal("0")
    if side == "BUY" and segment == "DELIVERY":
        stt = turnover * STT_DELIVERY
    elif side == "SELL":
        if segment == "DELIVERY":
            stt = turnover * STT_DELIVERY
        elif segment == "INTRADAY":
            stt = turnover * STT_INTRADAY_SELL

    exchange_charge = turnover * EXCHANGE_RATES.get(exchange, Decimal("0"))
    sebi_charge = turnover * SEBI_RATE
    stamp_duty = turnover * STAMP_DUTY_RATE if side == "BUY" else Decimal("0")
    gst = (brokerage + exchange_charge) * GST_RATE

    total = brokerage + stt + exchange_charge + sebi_charge + stamp_duty + gst

    return ChargeBreakdown(
        brokerage=round_money(brokerage),
        stt=round_money(stt),
        exchange_charge=round_money(exchange_charge),
        sebi_charge=round_money(sebi_charge),
        stamp_duty=round_money(stamp_duty),
        gst=round_money(gst),
        total=round_money(total),
    )


def calculate_buy_amount(
    price: Number,
    quantity: int,
    exchange: str = "NSE",
    segment: str = "DELIVERY",
) -> TradeAmount:
    """Gross value, charges and charge-inclusive cost of a buy."""
    gross = Decimal(str(price)) * quantity
    charges = calculate_charges("BUY", price, quantity, exchange, segment)
    return TradeAmount(
        gross_amount=round_money(gross),
        charges=charges,
        net_amount=round_money(gross + charges.total),
    )


def calculate_sell_amount(
    price: Number,
    quantity: int,
    exchange: str = "NSE",
    segment: str = "DELIVERY",
) -> TradeAmount:
    """Gross value, charges and charge-net proceeds of a sell."""
    gross = Decimal(str(price)) * quantity
    charges = calculate_charges("SELL", price, quantity, exchange, segment)
    return TradeAmount(
        gross_amount=round_money(gross),
        charges=charges,
        net_amount=round_money(gross - charges.total),
    )


def calculate_pnl(
    buy_price: Number,
    sell_price: Number,
    quantity: int,
    buy_charges: Optional[ChargeBreakdown] = None,
    sell_charges: Optional[ChargeBreakdown] = None,
    exchange: str = "NSE",
    segment: str = "DELIVERY",
) -> PnLBreakdown:
    """
    P&L of selling quantity shares bought at buy_price.

    Charges not supplied are recomputed from the prices.
    """
    buy_value = Decimal(str(buy_price)) * quantity
    sell_value = Decimal(str(sell_price)) * quantity

    if buy_charges is None:
        buy_charges = calculate_charges("BUY", buy_price, quantity, exchange, segment)
    if sell_charges is None:
        sell_charges = calculate_charges("SELL", sell_price, quantity, exchange, segment)

    total_charges = buy_charges.total + sell_charges.total
    gross_pnl = sell_value - buy_value
    net_pnl = gross_pnl - total_charges
    if buy_value > 0:
        net_pnl_percent = net_pnl / (buy_value + buy_charges.total) * 100
    else:
        net_pnl_percent = Decimal("0")

    return PnLBreakdown(
        buy_value=round_money(buy_value),
        sell_value=round_money(sell_value),
        buy_charges=buy_charges.total,
        sell_charges=sell_charges.total,
        total_charges=round_money(total_charges),
        gross_pnl=round_money(gross_pnl),
        net_pnl=round_money(net_pnl),
        net_pnl_percent=round_money(net_pnl_percent),
    )
