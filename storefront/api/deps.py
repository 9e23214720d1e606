from contextlib import contextmanager
from fastapi import Header, HTTPException
from storefront.core.errors import (
    CartError, GatewayError, GatewayUnavailable, IllegalTransition, InsufficientStock,
    OrderNotFound, OrderValidationError, SettlementError,
)
from storefront.core.auth import is_admin
from storefront.db.session import get_db  # noqa: F401  (route dependency)

GATEWAY_RETRY_AFTER_SECONDS = 5

def cart_session(x_cart_session: str | None = Header(default=None, alias="X-Cart-Session")) -> str:
    if not x_cart_session or len(x_cart_session) > 128:
        raise HTTPException(status_code=400, detail="X-Cart-Session header required")
    return x_cart_session

def can_see_order(order, identity: dict | None, email: str | None = None) -> bool:
    """Admins, the owning user, or a guest who knows the order email."""
    if is_admin(identity):
        return True
    if order.user_id:
        return bool(identity) and identity.get("sub") == order.user_id
    return bool(email) and (order.guest_email or "").lower() == email.lower()

@contextmanager
def domain_errors():
    """Translate service exceptions into HTTP responses."""
    try:
        yield
    except InsufficientStock as exc:
        raise HTTPException(status_code=409, detail={
            "message": exc.user_message,
            "product_id": exc.product_id,
            "requested": exc.requested,
            "available": exc.available,
            "reason": exc.reason,
        })
    except SettlementError:
        raise HTTPException(status_code=500, detail="Order could not be created")
    except (OrderValidationError, CartError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except IllegalTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except GatewayUnavailable:
        raise HTTPException(
            status_code=503,
            detail="Payment provider unavailable, try again",
            headers={"Retry-After": str(GATEWAY_RETRY_AFTER_SECONDS)},
        )
    except GatewayError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
