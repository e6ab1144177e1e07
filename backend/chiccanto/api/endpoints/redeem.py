from fastapi import APIRouter, Depends

from chiccanto.api.deps import get_redeem_limiter, get_registry, get_request_ip
from chiccanto.schemas.activation import RedeemRequest, RedeemResponse
from chiccanto.services.activation import ActivationRegistry
from chiccanto.services.rate_limit import FixedWindowRateLimiter

router = APIRouter()


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_code(
    body: RedeemRequest,
    ip: str = Depends(get_request_ip),
    limiter: FixedWindowRateLimiter = Depends(get_redeem_limiter),
    registry: ActivationRegistry = Depends(get_registry),
):
    limiter.enforce(f"redeem:{ip}")
    result = registry.redeem(body.code, body.init)
    return RedeemResponse(existing=result.existing, cards=result.cards)
