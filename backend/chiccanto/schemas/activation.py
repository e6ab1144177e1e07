from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel


class LoginRequest(BaseModel):
    password: Optional[str] = None


class AssignRequest(BaseModel):
    order_id: Optional[Union[str, int]] = None
    card_key: Optional[str] = None
    sku: Optional[str] = None
    quantity: Optional[Union[int, str]] = 1
    buyer_name: Optional[str] = None


class AssignResponse(BaseModel):
    ok: bool = True
    existing: bool
    order_id: str
    card_key: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    codes: List[str]
    message_text: str
    etsy_message: str


class IssueRequest(BaseModel):
    sku: str
    count: int = 1


class IssueResponse(BaseModel):
    ok: bool = True
    sku: str
    codes: List[str]


class RedeemRequest(BaseModel):
    code: Optional[str] = None
    init: Optional[Dict[str, Any]] = None


class RedeemResponse(BaseModel):
    ok: bool = True
    existing: bool
    cards: List[Dict[str, Any]]
