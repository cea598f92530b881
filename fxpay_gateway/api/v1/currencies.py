"""Currency endpoints: supported codes, rates, conversion and refresh"""

from fastapi import APIRouter, Depends, Query

from fxpay_gateway.api.dependencies import get_rate_resolver
from fxpay_gateway.api.v1.schemas import ConvertRequest, RateResponse
from fxpay_gateway.services.rates import SUPPORTED_CURRENCIES, RateResolver

router = APIRouter()


@router.get("/currencies")
def list_currencies():
    return {"currencies": list(SUPPORTED_CURRENCIES), "count": len(SUPPORTED_CURRENCIES)}


@router.get("/currencies/rates")
def get_all_rates(
    base: str = Query("USD", min_length=3, max_length=3),
    resolver: RateResolver = Depends(get_rate_resolver),
):
    return resolver.get_all_rates(base)


@router.get("/currencies/rate", response_model=RateResponse)
def get_rate(
    from_currency: str = Query(..., alias="from", min_length=3, max_length=3),
    to_currency: str = Query(..., alias="to", min_length=3, max_length=3),
    resolver: RateResolver = Depends(get_rate_resolver),
):
    """Resolve a pair through cache, inverse cache, stored quote and inverse stored quote"""
    quote = resolver.resolve(from_currency, to_currency)
    return RateResponse(
        from_currency=from_currency.upper(),
        to_currency=to_currency.upper(),
        rate=quote.rate,
        inverse_rate=quote.inverse_rate,
        source=quote.source,
        latency_ms=quote.latency_ms,
        fetched_at=quote.fetched_at,
        rate_id=quote.rate_id,
    )


@router.post("/currencies/convert")
def convert(body: ConvertRequest, resolver: RateResolver = Depends(get_rate_resolver)):
    return resolver.convert(body.amount, body.from_currency, body.to_currency)


@router.get("/currencies/rates/history")
def get_rate_history(
    from_currency: str = Query(..., alias="from", min_length=3, max_length=3),
    to_currency: str = Query(..., alias="to", min_length=3, max_length=3),
    days: int = Query(30, ge=1, le=365),
    resolver: RateResolver = Depends(get_rate_resolver),
):
    return {
        "from_currency": from_currency.upper(),
        "to_currency": to_currency.upper(),
        "history": resolver.get_rate_history(from_currency, to_currency, days),
    }


@router.post("/currencies/rates/refresh")
async def refresh_rates(resolver: RateResolver = Depends(get_rate_resolver)):
    """Pull fresh rates for every base currency; each base reports its own outcome"""
    return {"results": await resolver.refresh_rates()}
