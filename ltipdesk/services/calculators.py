from decimal import ROUND_HALF_UP, Decimal

from ltipdesk.schemas import TaxEstimate, TaxEstimateRequest, ZakatEstimate, ZakatEstimateRequest

CENT = Decimal("0.01")

# (lower bound in SAR, marginal rate above it), highest bracket first.
INCOME_TAX_BRACKETS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("1000000"), Decimal("0.25")),
    (Decimal("500000"), Decimal("0.20")),
    (Decimal("250000"), Decimal("0.15")),
    (Decimal("100000"), Decimal("0.10")),
    (Decimal("50000"), Decimal("0.05")),
)

ZAKAT_RATE = Decimal("0.025")
NISAB_GOLD_GRAMS = Decimal("85")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def progressive_tax(income: Decimal) -> Decimal:
    if income <= 0:
        return Decimal(0)

    tax = Decimal(0)
    for lower_bound, rate in INCOME_TAX_BRACKETS:
        if income > lower_bound:
            tax += (income - lower_bound) * rate
            income = lower_bound
    return tax


def estimate_tax(request: TaxEstimateRequest) -> TaxEstimate:
    share_gain = (request.current_price - request.exercise_price) * request.vested_shares
    total_income = request.annual_income + share_gain + request.other_capital_gains

    tax_on_salary = progressive_tax(request.annual_income)
    tax_on_total = progressive_tax(total_income)
    additional_tax = tax_on_total - tax_on_salary
    effective_rate = additional_tax / share_gain * 100 if share_gain > 0 else Decimal(0)

    return TaxEstimate(
        share_gain=_money(share_gain),
        total_taxable_income=_money(total_income),
        tax_on_salary=_money(tax_on_salary),
        tax_on_total_income=_money(tax_on_total),
        additional_tax_from_shares=_money(additional_tax),
        effective_tax_rate=_money(effective_rate),
        net_gain_after_tax=_money(share_gain - additional_tax),
    )


def estimate_zakat(request: ZakatEstimateRequest, gold_price_per_gram: Decimal) -> ZakatEstimate:
    nisab = NISAB_GOLD_GRAMS * gold_price_per_gram
    share_value = request.vested_shares * request.current_price
    total_assets = share_value + request.cash_savings + request.gold + request.investments + request.other_assets
    net_assets = total_assets - request.liabilities
    payable = net_assets >= nisab

    return ZakatEstimate(
        share_value=_money(share_value),
        total_assets=_money(total_assets),
        net_zakatable_wealth=_money(net_assets),
        nisab_threshold=_money(nisab),
        zakat_payable=payable,
        zakat_due=_money(net_assets * ZAKAT_RATE) if payable else Decimal("0.00"),
    )
