from __future__ import annotations
import logging
from redis.exceptions import RedisError
from fastapi import HTTPException, Request, status
from ..config import get_settings
from ..redis_client import redis
from ..observability.logging import client_ip

S = get_settings()
log = logging.getLogger("otpservice.rate_limit")

# ---- generic token counter (fixed window) ----
async def _hit(key: str, window_sec: int, limit: int) -> None:
    try:
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, window_sec)
        ttl = await redis.ttl(key) if count > limit else 0
    except RedisError:
        # fail open: requests pass while redis is down
        log.warning("rate limit check skipped; redis unavailable", extra={"key": key}, exc_info=True)
        return
    if count > limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limit exceeded",
            headers={"Retry-After": str(max(ttl, 1)) if ttl and ttl > 0 else "10"},
        )

# ---- public helpers ----
async def limit_otp_request(req: Request) -> None:
    ip = client_ip(req)
    await _hit(f"rl:otp:req:ip:{ip}", window_sec=10, limit=S.RL_OTP_REQ_PER_IP_10S)

async def limit_otp_verify(req: Request) -> None:
    ip = client_ip(req)
    await _hit(f"rl:otp:verify:ip:{ip}", window_sec=10, limit=S.RL_OTP_VERIFY_PER_IP_10S)
