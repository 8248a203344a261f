import random
from typing import List, Optional
from fastapi import Header

from jimeng_api.services.account import split_tokens


async def get_tokens(authorization: Optional[str] = Header(None)) -> List[str]:
    """All session tokens from `Authorization: Bearer t1,t2,...`"""
    return split_tokens(authorization)


async def pick_token(authorization: Optional[str] = Header(None)) -> str:
    """One session token, picked at random to spread load across accounts"""
    return random.choice(split_tokens(authorization))
