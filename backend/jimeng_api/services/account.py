"""
Account helpers: credit balance, daily credit claim and token liveness
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List

from jimeng_api.core.exceptions import UpstreamCallFailed, ValidationError
from jimeng_api.core.http_client import UpstreamClient

logger = logging.getLogger(__name__)

USER_CREDIT_URI = "/commerce/v1/benefits/user_credit"
CREDIT_RECEIVE_URI = "/commerce/v1/benefits/credit_receive"
ACCOUNT_INFO_URI = "/passport/account/info/v2"


@dataclass
class CreditBalance:
    gift_credit: int = 0
    purchase_credit: int = 0
    vip_credit: int = 0

    @property
    def total_credit(self) -> int:
        return self.gift_credit + self.purchase_credit + self.vip_credit

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "total_credit": self.total_credit}


def split_tokens(authorization: str) -> List[str]:
    """Parse `Bearer t1,t2,...` into its session tokens"""
    if not authorization:
        raise ValidationError("Authorization header is required")
    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[7:]
    tokens = [token.strip() for token in value.split(",") if token.strip()]
    if not tokens:
        raise ValidationError("Authorization header carries no token")
    return tokens


async def get_credit(client: UpstreamClient, token: str) -> CreditBalance:
    result = await client.request(
        "POST",
        USER_CREDIT_URI,
        token,
        headers={"Referer": "https://jimeng.jianying.com/ai-tool/image/generate"}
    )
    credit = (result or {}).get("credit") or {}
    balance = CreditBalance(
        gift_credit=credit.get("gift_credit") or 0,
        purchase_credit=credit.get("purchase_credit") or 0,
        vip_credit=credit.get("vip_credit") or 0,
    )
    logger.info(
        f"Credit: gift={balance.gift_credit}, purchase={balance.purchase_credit}, "
        f"vip={balance.vip_credit}"
    )
    return balance


async def receive_credit(client: UpstreamClient, token: str) -> int:
    """Claim today's free credit; returns the new total"""
    logger.info("Claiming daily credit")
    result = await client.request(
        "POST",
        CREDIT_RECEIVE_URI,
        token,
        data={"time_zone": "Asia/Shanghai"},
        headers={"Referer": "https://jimeng.jianying.com/ai-tool/image/generate"}
    ) or {}
    logger.info(f"Claimed {result.get('receive_quota')} credit, total now {result.get('cur_total_credits')}")
    return result.get("cur_total_credits") or 0


async def ensure_credit(client: UpstreamClient, token: str):
    """Claim daily credit when the balance is empty"""
    balance = await get_credit(client, token)
    if balance.total_credit <= 0:
        await receive_credit(client, token)


async def get_token_live_status(client: UpstreamClient, token: str) -> bool:
    try:
        result = await client.request(
            "POST",
            ACCOUNT_INFO_URI,
            token,
            params={"account_sdk_source": "web"}
        )
    except UpstreamCallFailed as e:
        if e.transient:
            raise
        logger.info(f"Token rejected by upstream: {e.message}")
        return False
    return bool((result or {}).get("user_id"))
