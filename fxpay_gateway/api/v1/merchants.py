"""Merchant endpoints: onboarding, lookup and whitelisted updates"""

from typing import Optional

from fastapi import APIRouter, Depends

from fxpay_gateway.api.dependencies import get_actor, get_merchant_directory
from fxpay_gateway.api.v1.schemas import MerchantCreate, MerchantResponse, MerchantUpdate
from fxpay_gateway.services.merchants import MerchantDirectory

router = APIRouter()


@router.post("/merchants", status_code=201, response_model=MerchantResponse)
def create_merchant(
    body: MerchantCreate,
    directory: MerchantDirectory = Depends(get_merchant_directory),
    actor: Optional[str] = Depends(get_actor),
):
    return directory.create_merchant(body.model_dump(), actor)


@router.get("/merchants/{merchant_id}", response_model=MerchantResponse)
def get_merchant(merchant_id: str, directory: MerchantDirectory = Depends(get_merchant_directory)):
    return directory.get_merchant(merchant_id)


@router.patch("/merchants/{merchant_id}", response_model=MerchantResponse)
def update_merchant(
    merchant_id: str,
    body: MerchantUpdate,
    directory: MerchantDirectory = Depends(get_merchant_directory),
    actor: Optional[str] = Depends(get_actor),
):
    """Only fields present in the request body are changed"""
    return directory.update_merchant(merchant_id, body.model_dump(exclude_unset=True), actor)
