from kafka import KafkaProducer
from kafka.errors import KafkaError
import json
import structlog
from storefront.core.config import settings

logger = structlog.get_logger(__name__)

_producer = None

def get_producer():
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    p = get_producer()
    p.send(topic, key=key, value=value)
    p.flush(5)

def publish_order_event(order, event_type: str = "order.updated", event: str | None = None) -> bool:
    """Announce a committed order change. Call only after commit; never raises."""
    if not settings.EVENTS_ENABLED:
        return False
    value = {
        "type": event_type,
        "order_id": str(order.id),
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
    }
    if event:
        value["event"] = event
    try:
        send(settings.TOPIC_ORDER_EVENTS, key=str(order.id), value=value)
    except KafkaError:
        logger.warning("order_event.publish_failed", order_id=str(order.id), type=event_type, exc_info=True)
        return False
    return True
