from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from chiccanto.api.deps import get_registry, request_origin
from chiccanto.core.auth import require_fulfillment_access
from chiccanto.core.errors import NotFoundError
from chiccanto.schemas.activation import AssignRequest, AssignResponse, IssueRequest, IssueResponse
from chiccanto.services.activation import ActivationRegistry, build_buyer_message

router = APIRouter(dependencies=[Depends(require_fulfillment_access)])


@router.post("/assign", response_model=AssignResponse)
async def assign_codes(
    body: AssignRequest,
    request: Request,
    registry: ActivationRegistry = Depends(get_registry),
):
    result = registry.assign(
        order_id=str(body.order_id) if body.order_id is not None else "",
        card_key=body.card_key,
        sku=body.sku,
        quantity=body.quantity,
        buyer_name=body.buyer_name,
    )
    message_text = build_buyer_message(
        result.codes,
        request_origin(request),
        buyer_name=result.buyer_name,
        support_email=registry.config.support_email,
    )
    return AssignResponse(
        existing=result.existing,
        order_id=result.order_id,
        card_key=result.key if result.key_field == "card_key" else None,
        sku=result.key if result.key_field == "sku" else None,
        quantity=result.quantity,
        codes=result.codes,
        message_text=message_text,
        etsy_message=message_text,
    )


@router.post("/codes/issue", response_model=IssueResponse)
async def issue_codes(body: IssueRequest, registry: ActivationRegistry = Depends(get_registry)):
    codes = registry.issue(sku=body.sku, count=body.count)
    return IssueResponse(sku=body.sku.strip().lower(), codes=codes)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, registry: ActivationRegistry = Depends(get_registry)) -> dict:
    order = registry.lookup_order(order_id)
    if order is None:
        raise NotFoundError("Order not found.")
    return {"ok": True, "order": order}
