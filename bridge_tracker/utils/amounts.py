from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext

USD_QUANT = Decimal("0.01")
PRICE_QUANT = Decimal("0.000001")

# uint256 needs 78 significant digits
_PRECISION = 78


def normalize_amount(raw: int | str, decimals: int) -> str:
    """Scale a raw on-chain integer amount by ``decimals`` without floats.

    Returns a plain decimal string with trailing zeros stripped,
    e.g. ``normalize_amount(1500000000000000000, 18) == "1.5"``.
    """
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(int(raw)).scaleb(-decimals)
        if value == 0:
            return "0"
        value = value.normalize()
        return format(value, "f")


def parse_amount(amount: str | None) -> Decimal | None:
    if amount is None:
        return None
    try:
        value = Decimal(amount)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not value.is_finite():
        return None
    return value


def usd_value(amount: Decimal, price: Decimal) -> str:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return str((amount * price).quantize(USD_QUANT, rounding=ROUND_HALF_UP))


def format_price(price: Decimal) -> str:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return str(Decimal(price).quantize(PRICE_QUANT, rounding=ROUND_HALF_UP))


def sum_usd(values) -> Decimal:
    """Sum decimal strings, ignoring nulls and garbage."""
    total = Decimal("0")
    for v in values:
        parsed = parse_amount(v)
        if parsed is not None:
            total += parsed
    return total
