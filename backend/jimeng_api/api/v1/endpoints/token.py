"""
Session token utilities
"""

import asyncio
import logging
from typing import List
from fastapi import APIRouter, Depends

from jimeng_api.api.deps import get_tokens
from jimeng_api.core.http_client import UpstreamClient, get_upstream_client
from jimeng_api.schemas.openai import TokenCheckRequest
from jimeng_api.services.account import get_credit, get_token_live_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/check")
async def check_token(
    body: TokenCheckRequest,
    client: UpstreamClient = Depends(get_upstream_client)
):
    """Whether a session token is still accepted upstream"""
    return {"live": await get_token_live_status(client, body.token)}


@router.post("/points")
async def get_points(
    tokens: List[str] = Depends(get_tokens),
    client: UpstreamClient = Depends(get_upstream_client)
):
    """Credit balance of every token in the Authorization header"""
    balances = await asyncio.gather(*(get_credit(client, token) for token in tokens))
    return [
        {"token": token, "points": balance.to_dict()}
        for token, balance in zip(tokens, balances)
    ]
