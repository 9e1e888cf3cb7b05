"""Pydantic schemas for request/response validation."""
from typing import Optional
from pydantic import BaseModel, Field


class InitializeRequest(BaseModel):
    """Request body for POST /v1/admin/initialize."""
    admin: str = Field(..., min_length=1, description="Admin account")
    liquidity_pool: str = Field(..., min_length=1, description="Account funding BNPL payments")


class AdminConfigResponse(BaseModel):
    admin: str
    liquidity_pool: str


class InitializedResponse(BaseModel):
    initialized: bool


class LiquidityPoolResponse(BaseModel):
    liquidity_pool: str


class SubscriptionCreateRequest(BaseModel):
    """Request body for POST /v1/subscriptions."""
    subscriber: str = Field(..., min_length=1, description="Paying account")
    merchant: str = Field(..., min_length=1, description="Receiving account")
    token: str = Field(..., min_length=1, description="Token identifier")
    amount: int = Field(..., description="Amount per payment in token base units")
    interval: int = Field(..., description="Seconds between payments")


class SubscriptionResponse(BaseModel):
    """A subscription as stored."""
    subscriber: str
    merchant: str
    token: str
    amount: int
    interval: int
    last_payment_time: int
    is_active: bool
    credit_score: int


class CanProcessResponse(BaseModel):
    can_process: bool


class CreditScoreResponse(BaseModel):
    credit_score: int


class CollectionResponse(BaseModel):
    """Response body for POST .../collect."""
    branch: str = Field(..., description="direct or bnpl")
    amount: int = Field(..., description="Amount transferred to the merchant")
    credit_score: int
    last_payment_time: int
    debt_amount: Optional[int] = None


class DebtResponse(BaseModel):
    """Outstanding BNPL debt."""
    subscriber: str
    amount: int
    token: str


class RepayRequest(BaseModel):
    """Request body for POST /v1/debts/{subscriber}/repay."""
    amount: int = Field(..., description="Amount to repay")


class RepayResponse(BaseModel):
    subscriber: str
    repaid: int
    remaining: int
