import json
import logging

from models import WebhookEvent, db
from shops import shop_ids

logger = logging.getLogger(__name__)


def log_webhook_event(shop_domain, topic, status, error_message=None, payload=None, response_time=None,
                      cache=shop_ids):
    """
    Record one webhook delivery. Failing to record must never fail the
    delivery itself, so errors here are logged and dropped.
    """
    shop_id = cache.get(shop_domain)
    if shop_id is None:
        logger.debug("No shop row for %s, webhook %s not recorded", shop_domain, topic)
        return None
    try:
        event = WebhookEvent(
            shop_id=shop_id,
            topic=topic,
            status=status,
            error_message=error_message,
            payload=json.dumps(payload) if payload is not None else None,
            response_time=response_time,
        )
        db.session.add(event)
        db.session.commit()
        return event
    except Exception:
        db.session.rollback()
        logger.exception("Could not record webhook %s for %s", topic, shop_domain)
        return None


def get_webhook_stats(shop_domain, limit=100, cache=shop_ids):
    shop_id = cache.get(shop_domain)
    empty = {"events": [], "total": 0, "success": 0, "error": 0, "byTopic": {}, "avgResponseTime": 0}
    if shop_id is None:
        return empty

    events = (
        WebhookEvent.query.filter_by(shop_id=shop_id)
        .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
        .limit(limit)
        .all()
    )
    if not events:
        return empty

    by_topic = {}
    for event in events:
        by_topic[event.topic] = by_topic.get(event.topic, 0) + 1
    timings = [event.response_time for event in events if event.response_time is not None]

    return {
        "events": [
            {
                "id": event.id,
                "topic": event.topic,
                "status": event.status,
                "errorMessage": event.error_message,
                "responseTime": event.response_time,
                "createdAt": event.created_at.isoformat() if event.created_at else None,
            }
            for event in events
        ],
        "total": len(events),
        "success": sum(1 for event in events if event.status == "success"),
        "error": sum(1 for event in events if event.status == "error"),
        "byTopic": by_topic,
        "avgResponseTime": round(sum(timings) / len(timings)) if timings else 0,
    }
