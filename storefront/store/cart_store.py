from typing import Dict
from redis import Redis
from storefront.core.config import settings

def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)

def cart_key(session_id: str) -> str:
    return f"cart:guest:{session_id}"

class RedisGuestCartStore:
    """Anonymous carts, one Redis hash per browser session: {product_id: qty}.

    Every write refreshes the TTL, so an abandoned cart expires on its own.
    """

    def __init__(self, client: Redis | None = None, ttl_seconds: int | None = None):
        self.client = client or get_client()
        self.ttl = ttl_seconds or settings.GUEST_CART_TTL_SECONDS

    def get(self, session_id: str) -> Dict[int, int]:
        raw = self.client.hgetall(cart_key(session_id))
        items = {}
        for pid, qty in raw.items():
            try:
                items[int(pid)] = int(qty)
            except (TypeError, ValueError):
                continue
        return items

    def put(self, session_id: str, product_id: int, qty: int) -> None:
        key = cart_key(session_id)
        pipe = self.client.pipeline()
        pipe.hset(key, str(product_id), qty)
        pipe.expire(key, self.ttl)
        pipe.execute()

    def remove(self, session_id: str, product_id: int) -> None:
        self.client.hdel(cart_key(session_id), str(product_id))

    def clear(self, session_id: str) -> None:
        self.client.delete(cart_key(session_id))

_store: RedisGuestCartStore | None = None

def get_guest_store() -> RedisGuestCartStore:
    global _store
    if _store is None:
        _store = RedisGuestCartStore()
    return _store
