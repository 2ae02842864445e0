from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from hotelbooking.core.config import settings


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        new_query = urlencode(qs, doseq=True)
        return urlunparse(parsed._replace(query=new_query))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "hotelbooking",
    broker=_redis_url,
    backend=_redis_url,
    include=["hotelbooking.tasks.jobs"],
)

celery.conf.timezone = settings.TIMEZONE

celery.conf.beat_schedule = {
    "process-outbox-every-minute": {
        "task": "hotelbooking.tasks.jobs.process_outbox",
        "schedule": 60.0,
        "kwargs": {"limit": 100},
    },
    "process-email-queue-every-2-minutes": {
        "task": "hotelbooking.tasks.jobs.process_email_queue",
        "schedule": 120.0,
        "kwargs": {"limit": 50},
    },
    "advance-booking-lifecycle-every-5-minutes": {
        "task": "hotelbooking.tasks.jobs.advance_booking_lifecycle",
        "schedule": 300.0,
    },
    "expire-pending-bookings-every-5-minutes": {
        "task": "hotelbooking.tasks.jobs.expire_pending_bookings",
        "schedule": 300.0,
    },
}
