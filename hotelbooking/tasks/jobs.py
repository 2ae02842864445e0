from hotelbooking.tasks.celery_app import celery
from hotelbooking.tasks import worker_jobs

@celery.task(name="hotelbooking.tasks.jobs.process_outbox")
def process_outbox(limit: int = 100):
    return worker_jobs.process_outbox(limit=limit)


@celery.task(name="hotelbooking.tasks.jobs.process_email_queue")
def process_email_queue(limit: int = 50):
    return worker_jobs.process_email_queue(limit=limit)


@celery.task(name="hotelbooking.tasks.jobs.advance_booking_lifecycle")
def advance_booking_lifecycle():
    return worker_jobs.advance_booking_lifecycle()


@celery.task(name="hotelbooking.tasks.jobs.expire_pending_bookings")
def expire_pending_bookings():
    return worker_jobs.expire_pending_bookings()
