import logging
import os
import signal
import threading

import lifecycle
import storage
from broker import Consumer, Publisher, Queue, QueueUnavailableError
from database import db, get_loop, init_db
from models import LoopStatus, NotificationType, ProcessingJob
from notifications import handle_event, notify
from probe import probe_duration
from transcoder import transcode_preview
from waveform import extract_waveform

logger = logging.getLogger(__name__)

NOTIFICATION_PREFETCH = 10

_stop_event = threading.Event()
_consumers: list[Consumer] = []
_threads: list[threading.Thread] = []


def _announce_ready(loop_id: str, publisher: Publisher | None):
    if publisher is None:
        return
    loop = get_loop(loop_id)
    if loop is None:
        return
    notify(
        publisher,
        NotificationType.PROCESSING_COMPLETE,
        recipient_id=loop.user_id,
        actor_id=None,
        payload={"loopId": loop.id, "loopTitle": loop.title, "slug": loop.slug},
    )


def _discard_orphan_preview(loop_id: str, preview_path: str | None):
    """Remove a preview this run wrote, unless a ready row now points at it.

    Overlapping deliveries of one job share the preview path, so the run that
    loses the race must leave the winner's file alone.
    """
    if not preview_path:
        return
    if lifecycle.is_ready(loop_id):
        logger.info(f"Loop {loop_id} was completed by another delivery; keeping {preview_path}")
        return
    storage.remove(preview_path)


def process_job(message: dict, publisher: Publisher | None = None) -> LoopStatus | None:
    """Process one job: transcode, waveform, probe, then a single ready write.

    Never raises, so the broker message is acknowledged whatever happens.
    Returns the terminal status written, or None if the job was skipped.
    """
    try:
        job = ProcessingJob.from_message(message)
    except ValueError as e:
        logger.error(f"Discarding job: {e}")
        return None

    loop_id = job.resource_id
    logger.info(f"Processing loop {loop_id} ({job.job_type})")
    preview_path = None

    try:
        if not lifecycle.begin_processing(loop_id):
            return None

        source_path = storage.upload_path(job.source_file_path)
        if not os.path.exists(source_path):
            raise RuntimeError(f"Original file not found: {job.source_file_path}")

        preview_path = transcode_preview(source_path, loop_id)
        waveform = extract_waveform(source_path)

        duration_s = probe_duration(source_path)
        if duration_s is None:
            logger.info(f"Duration unknown for loop {loop_id}; keeping upload-time value")
        else:
            logger.info(f"Detected duration for loop {loop_id}: {duration_s:.2f}s")

        if not lifecycle.complete(loop_id, preview_path, waveform, duration_s):
            _discard_orphan_preview(loop_id, preview_path)
            return None

    except Exception as e:
        logger.error(f"Loop {loop_id} failed: {e}", exc_info=True)
        recorded = False
        try:
            recorded = lifecycle.fail(loop_id, str(e) or type(e).__name__)
            _discard_orphan_preview(loop_id, preview_path)
        except Exception as cleanup_error:
            logger.error(f"Could not record failure for loop {loop_id}: {cleanup_error}", exc_info=True)
        return LoopStatus.FAILED if recorded else None

    logger.info(f"Loop {loop_id} ready at {preview_path}")
    try:
        _announce_ready(loop_id, publisher)
    except Exception as e:
        logger.error(f"Could not announce loop {loop_id}: {e}", exc_info=True)
    return LoopStatus.READY


def requeue_pending_loops(publisher: Publisher) -> int:
    """Re-publish jobs for loops still pending, e.g. uploads accepted while the
    broker was unreachable. A duplicate of a job still in the queue is harmless:
    the second delivery finds the loop ready and does nothing.
    """
    with db() as conn:
        rows = conn.execute(
            "SELECT id, original_file FROM loops WHERE status='pending' ORDER BY created_at ASC"
        ).fetchall()

    count = 0
    for row in rows:
        job = ProcessingJob(resource_id=row["id"], source_file_path=row["original_file"])
        try:
            publisher.publish(Queue.AUDIO_PROCESSING, job.to_message())
        except QueueUnavailableError as e:
            logger.warning(f"Requeue stopped after {count} loop(s): {e}")
            break
        count += 1

    if count:
        logger.warning(f"Requeued {count} pending loop(s) on startup")
    else:
        logger.info("No pending loops to requeue on startup")
    return count


def _start_consumer(consumer: Consumer, name: str):
    thread = threading.Thread(target=consumer.run, args=(_stop_event,), daemon=True, name=name)
    thread.start()
    _consumers.append(consumer)
    _threads.append(thread)


def start_worker(publisher: Publisher):
    _stop_event.clear()
    _start_consumer(
        Consumer(Queue.AUDIO_PROCESSING, lambda message: process_job(message, publisher), prefetch=1),
        "processing-consumer",
    )
    _start_consumer(
        Consumer(Queue.NOTIFICATIONS, handle_event, prefetch=NOTIFICATION_PREFETCH),
        "notification-consumer",
    )
    logger.info("Worker threads started")


def stop_worker():
    _stop_event.set()
    for consumer in _consumers:
        consumer.stop()
    for thread in _threads:
        thread.join(timeout=30)
    _consumers.clear()
    _threads.clear()
    logger.info("Worker threads stopped")


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logging.getLogger("pika").setLevel(logging.WARNING)

    init_db()
    storage.ensure_dirs()

    publisher = Publisher()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: _stop_event.set())

    requeue_pending_loops(publisher)
    start_worker(publisher)
    logger.info("Worker is running and waiting for messages")

    while not _stop_event.is_set():
        _stop_event.wait(timeout=1.0)

    logger.info("Shutting down worker")
    stop_worker()
    publisher.close()


if __name__ == "__main__":
    main()
